"""Decision oracle transports and the failure-safe ``consult`` boundary."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Literal, Optional, Protocol

import httpx

from ..errors import OracleError, OracleParseError, OracleTimeoutError
from .config import OracleProviderSpec
from .schemas import CoordinationResponse, parse_coordination_response

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


class Oracle(Protocol):
    """Anything that turns a prompt into raw model text."""

    def complete(self, prompt: str) -> str:
        ...


class CliOracle:
    """Run a one-shot agent CLI (``claude -p``, ``codex exec -``) with the prompt on stdin."""

    def __init__(
        self,
        command: str,
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 120.0,
        cwd: Optional[str] = None,
    ) -> None:
        self._args = shlex.split(command)
        if not self._args:
            raise ValueError("Oracle command must not be empty")
        if model:
            self._args += ["--model", model]
        self._timeout = timeout_seconds
        self._cwd = cwd

    def complete(self, prompt: str) -> str:
        try:
            result = subprocess.run(
                self._args,
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                cwd=self._cwd,
            )
        except subprocess.TimeoutExpired as exc:
            raise OracleTimeoutError(f"{self._args[0]} did not answer within {self._timeout:g}s") from exc
        except OSError as exc:
            raise OracleError(f"Failed to run {self._args[0]}: {exc}") from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[-_STDERR_TAIL_CHARS:]
            raise OracleError(f"{self._args[0]} exited with code {result.returncode}: {stderr}")
        return result.stdout or ""


class OllamaOracle:
    """Call an Ollama-compatible ``/api/generate`` endpoint."""

    def __init__(
        self,
        endpoint: str,
        model: str,
        *,
        temperature: Optional[float] = None,
        timeout_seconds: float = 120.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url = endpoint.rstrip("/") + "/api/generate"
        self._model = model
        self._temperature = temperature
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=10.0))

    def complete(self, prompt: str) -> str:
        body: dict[str, object] = {"model": self._model, "prompt": prompt, "stream": False, "format": "json"}
        if self._temperature is not None:
            body["options"] = {"temperature": self._temperature}
        try:
            response = self._client.post(self._url, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise OracleTimeoutError(f"Ollama at {self._url} timed out") from exc
        except httpx.HTTPError as exc:
            raise OracleError(f"Ollama request failed: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise OracleParseError("Ollama returned a non-JSON body") from exc
        return str(data.get("response") or "") if isinstance(data, dict) else ""

    def close(self) -> None:
        self._client.close()


OracleFailure = Literal["parse_error", "timeout", "error"]


@dataclass(frozen=True)
class OracleResult:
    """Tagged outcome of one oracle round trip: a decision, or why there is none."""
    decision: Optional[CoordinationResponse] = None
    failure: Optional[OracleFailure] = None
    detail: str = ""
    raw: str = ""

    @property
    def ok(self) -> bool:
        return self.decision is not None


def consult(oracle: Oracle, prompt: str, *, allow_ignore: bool = False) -> OracleResult:
    """Ask the oracle for a decision; every failure comes back as a tagged result."""
    raw = ""
    try:
        raw = oracle.complete(prompt)
        return OracleResult(decision=parse_coordination_response(raw, allow_ignore=allow_ignore), raw=raw)
    except OracleParseError as exc:
        logger.warning("Oracle returned an invalid decision: %s", exc)
        return OracleResult(failure="parse_error", detail=str(exc), raw=raw)
    except OracleTimeoutError as exc:
        logger.warning("Oracle timed out: %s", exc)
        return OracleResult(failure="timeout", detail=str(exc))
    except OracleError as exc:
        logger.warning("Oracle call failed: %s", exc)
        return OracleResult(failure="error", detail=str(exc))
    except Exception as exc:
        logger.exception("Unexpected oracle failure")
        return OracleResult(failure="error", detail=str(exc), raw=raw)


def create_oracle(spec: OracleProviderSpec, *, cwd: Optional[str] = None) -> Oracle:
    """Build the transport described by a resolved provider spec."""
    if spec.type == "ollama":
        return OllamaOracle(
            spec.endpoint or "",
            spec.model or "",
            temperature=spec.temperature,
            timeout_seconds=spec.timeout_seconds,
        )
    return CliOracle(spec.command or "", model=spec.model, timeout_seconds=spec.timeout_seconds, cwd=cwd)
