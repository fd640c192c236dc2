"""Turn raw PTY byte streams into clean, classifiable text.

Every function here is pure: no state is kept between calls, except that
``capture_since_marker`` consumes the marker it is given.
"""

from __future__ import annotations

import re
from typing import MutableMapping, Optional, Sequence

# Cursor-forward and friends: TUIs move the cursor instead of padding with spaces.
_CURSOR_MOVEMENT = re.compile(r"\x1b\[\d*[CDABGdEF]")
_CURSOR_POSITION = re.compile(r"\x1b\[\d*(?:;\d+)?[Hf]")
_ERASE = re.compile(r"\x1b\[\d*[JK]")
_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ALL_ANSI = re.compile(r"\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# SGR fragments left behind when a chunk boundary split `ESC[...m`.
_ORPHAN_SGR = re.compile(r"\[[\d;]*m")
_SPLIT_SGR = re.compile(r"(\[[\d;]*)\r?\n([\d;]*m)")
_LONG_SPACES = re.compile(r" {3,}")
_INNER_SPACES = re.compile(r" {2,}")
_BLANK_RUNS = re.compile(r"\n{3,}")
_ALNUM = re.compile(r"[a-zA-Z0-9]")

_TUI_DECORATIVE = re.compile(
    "[│╭╰╮╯─═╌║╔╗╚╝╠╣╦╩╬┌┐└┘├┤┬┴┼●○❮❯▶◀⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏⣾⣽⣻⢿⡿⣟⣯⣷"
    "✽✻✶✳✢⏺←→↑↓⬆⬇◆▪▫■□▲△▼▽◈⟨⟩⌘⏎⏏⌫⌦⇧⇪⌥·⎿✔◼]"
)

_LOADING_LINE = re.compile(
    r"^\s*(?:thinking|Forging|Shenaniganing|Inferring|Cooking|Brewing|Loading|Scheming|"
    r"Pondering|Conjuring|Manifesting|Reflecting|Synthesizing|Vibing|Summoning|Compiling|"
    r"processing|Elucidating|Cogitat\w+|Bak\w+)(?:…|\.{3})?(?:\s*\(.*\))?\s*$",
    re.IGNORECASE,
)

_STATUS_LINE = re.compile(
    r"^\s*(?:\d+[smh]\s+\d+s?\s*·|↓\s*[\d.]+k?\s*tokens|[\d.]+k?\s*tokens\s*$|·\s*↓|"
    r"esc\s+to\s+interrupt|update available|ate available|Run:\s+brew|brew\s+upgrade|"
    r"\d+\s+files?\s+\+\d+\s+-\d+|ctrl\+\w|\+\d+\s+lines|Wrote\s+\d+\s+lines\s+to|"
    r"\?\s+for\s+shortcuts|Cooked for|Baked for|Cogitated for)",
    re.IGNORECASE,
)

_PR_URL = re.compile(r"https?://github\.com/[\w.-]+/[\w.-]+/pull/\d+")
_PR_CREATED = re.compile(r"(?:Created|Opened)\s+pull\s+request\s+#\d+[^\n]*", re.IGNORECASE)
_COMMIT = re.compile(r"(?:committed|commit)\s+[a-f0-9]{7,40}\b", re.IGNORECASE)
_DIFF_STAT = re.compile(r"\d+\s+files?\s+changed.*?(?:insertion|deletion)[^\n]*", re.IGNORECASE)

_DEV_SERVER_URL = re.compile(r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0):\d+[^\s'\"<>)]*")


def strip_control_sequences(raw: str) -> str:
    """Remove terminal control sequences from ``raw`` and return readable text.

    Cursor movement and positioning become a single space; erase, OSC and any
    other escape sequence is removed; runs of three or more spaces collapse.
    """
    text = _SPLIT_SGR.sub(r"\1\2", raw or "")
    text = _CURSOR_MOVEMENT.sub(" ", text)
    text = _CURSOR_POSITION.sub(" ", text)
    text = _ERASE.sub("", text)
    text = _OSC.sub("", text)
    text = _ALL_ANSI.sub("", text)
    text = _CONTROL_CHARS.sub("", text)
    text = _ORPHAN_SGR.sub("", text)
    text = _LONG_SPACES.sub(" ", text)
    return text.strip()


def _is_noise(line: str) -> bool:
    return bool(_STATUS_LINE.search(line) or _LOADING_LINE.search(line))


def clean_for_display(raw: str) -> str:
    """Clean terminal output for operator-facing messages.

    Beyond :func:`strip_control_sequences` this drops decorative glyphs,
    loading/thinking lines, status-bar metadata and lines without any
    alphanumeric character, and collapses blank-line runs.
    """
    kept: list[str] = []
    for raw_line in strip_control_sequences(raw).split("\n"):
        # Status markers such as "·" and "↓" are decorative glyphs too, so the
        # patterns are checked both before and after glyph removal.
        if _is_noise(raw_line.strip()):
            continue
        line = _TUI_DECORATIVE.sub(" ", raw_line).replace("\xa0", " ").strip()
        if not line or _is_noise(line):
            continue
        if not _ALNUM.search(line):
            continue
        line = _INNER_SPACES.sub(" ", line).strip()
        if line:
            kept.append(line)
    return _BLANK_RUNS.sub("\n\n", "\n".join(kept)).strip()


def extract_completion_summary(raw: str) -> str:
    """Pull pull-request links, commits and diff stats out of a transcript.

    Gives operators a compact result instead of the raw terminal dump. The
    output is stable under re-application.
    """
    text = strip_control_sequences(raw)
    found: list[str] = []

    pr_urls = _PR_URL.findall(text)
    found.extend(pr_urls)
    if not pr_urls:
        found.extend(m.strip() for m in _PR_CREATED.findall(text))
    found.extend(m.strip() for m in _COMMIT.findall(text))
    found.extend(m.strip() for m in _DIFF_STAT.findall(text))

    lines: list[str] = []
    for item in found:
        if item and item not in lines:
            lines.append(item)
    return "\n".join(lines)


def extract_dev_server_url(raw: str) -> Optional[str]:
    """Return the first local dev-server URL printed in ``raw``, if any."""
    match = _DEV_SERVER_URL.search(strip_control_sequences(raw))
    return match.group(0) if match else None


def capture_since_marker(
    session_id: str,
    buffers: MutableMapping[str, Sequence[str]],
    markers: MutableMapping[str, int],
) -> str:
    """Return cleaned output produced since the session's turn marker.

    The marker is removed, so each turn's output is captured at most once.
    Returns an empty string when the session has no buffer or no marker.
    """
    buffer = buffers.get(session_id)
    marker = markers.get(session_id)
    if buffer is None or marker is None:
        return ""
    markers.pop(session_id, None)
    return clean_for_display("\n".join(list(buffer)[marker:]))
