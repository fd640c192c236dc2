"""PTY session management, output classification and sanitization."""

from .classifier import AutoResponseRule, OutputClassifier, RegexOutputClassifier, classifier_for_agent
from .service import SpawnOptions, TerminalService

__all__ = [
    "AutoResponseRule",
    "OutputClassifier",
    "RegexOutputClassifier",
    "SpawnOptions",
    "TerminalService",
    "classifier_for_agent",
]
