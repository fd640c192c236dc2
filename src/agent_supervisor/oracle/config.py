"""Parse oracle provider configuration and resolve the active provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional, cast

OracleProviderType = Literal["codex", "ollama", "claude"]

_DEFAULT_TIMEOUT_SECONDS = 120.0
_DEFAULT_COMMANDS = {"claude": "claude -p", "codex": "codex exec -"}


@dataclass(frozen=True)
class OracleProviderSpec:
    """Normalized settings for one named oracle provider.

    Attributes:
        name: Provider name referenced by ``oracle.default``.
        type: Provider backend type that determines required fields.
        command: Shell command used to invoke CLI-backed providers (Codex/Claude).
        model: Model identifier configured for this provider.
        endpoint: Base URL for Ollama-compatible HTTP providers.
        temperature: Sampling temperature for Ollama requests.
        timeout_seconds: Upper bound on one oracle round trip.
    """
    name: str
    type: OracleProviderType
    # codex / claude
    command: Optional[str] = None
    model: Optional[str] = None
    # ollama
    endpoint: Optional[str] = None
    temperature: Optional[float] = None
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class OracleRuntimeConfig:
    """Provider catalog plus the default provider name."""

    default_provider: str
    providers: dict[str, OracleProviderSpec]


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _timeout(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return _DEFAULT_TIMEOUT_SECONDS


def get_oracle_runtime_config(config: dict[str, Any]) -> OracleRuntimeConfig:
    """Resolve oracle providers and the default selection from runtime config.

    A built-in ``claude`` provider is always present; entries under
    ``oracle.providers`` may override it or add more. Entries with an unknown
    ``type`` are skipped.
    """
    oracle_cfg = _as_dict(config.get("oracle"))
    providers_cfg = _as_dict(oracle_cfg.get("providers"))
    default_provider = str(oracle_cfg.get("default") or "claude").strip() or "claude"

    providers: dict[str, OracleProviderSpec] = {
        "claude": OracleProviderSpec(name="claude", type="claude", command=_DEFAULT_COMMANDS["claude"]),
    }
    for name, raw in providers_cfg.items():
        if not isinstance(name, str) or not name.strip():
            continue
        item = _as_dict(raw)
        typ = str(item.get("type") or name).strip().lower()
        if typ == "local":
            typ = "ollama"
        if typ not in {"codex", "ollama", "claude"}:
            continue
        model = str(item.get("model") or "").strip() or None
        timeout_seconds = _timeout(item.get("timeout_seconds"))
        if typ in {"codex", "claude"}:
            providers[name] = OracleProviderSpec(
                name=name,
                type=cast(OracleProviderType, typ),
                command=str(item.get("command") or _DEFAULT_COMMANDS[typ]).strip(),
                model=model,
                timeout_seconds=timeout_seconds,
            )
            continue
        temperature = item.get("temperature")
        providers[name] = OracleProviderSpec(
            name=name,
            type="ollama",
            endpoint=str(item.get("endpoint") or "").strip() or None,
            model=model,
            temperature=float(temperature) if isinstance(temperature, (int, float)) else None,
            timeout_seconds=timeout_seconds,
        )
    return OracleRuntimeConfig(default_provider=default_provider, providers=providers)


def resolve_oracle_provider(runtime: OracleRuntimeConfig, name: Optional[str] = None) -> OracleProviderSpec:
    """Pick a provider by name (or the default) and validate its required fields.

    Raises:
        ValueError: If the provider is unknown or misses ``command`` (CLI
            providers) or ``endpoint``/``model`` (Ollama).
    """
    selected = (name or "").strip() or runtime.default_provider
    if selected not in runtime.providers:
        available = ", ".join(sorted(runtime.providers.keys()))
        raise ValueError(f"Unknown oracle provider '{selected}' (available: {available})")
    spec = runtime.providers[selected]
    if spec.type in {"codex", "claude"} and not spec.command:
        raise ValueError(f"Oracle provider '{spec.name}' missing required 'command'")
    if spec.type == "ollama" and (not spec.endpoint or not spec.model):
        raise ValueError(f"Oracle provider '{spec.name}' missing required 'endpoint' and/or 'model'")
    return spec
