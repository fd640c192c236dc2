"""Decision oracle: provider config, transports and the decision wire format."""

from .client import CliOracle, OllamaOracle, Oracle, OracleResult, consult, create_oracle
from .config import OracleProviderSpec, get_oracle_runtime_config, resolve_oracle_provider
from .schemas import CoordinationResponse, parse_coordination_response

__all__ = [
    "CliOracle",
    "CoordinationResponse",
    "OllamaOracle",
    "Oracle",
    "OracleProviderSpec",
    "OracleResult",
    "consult",
    "create_oracle",
    "get_oracle_runtime_config",
    "parse_coordination_response",
    "resolve_oracle_provider",
]
