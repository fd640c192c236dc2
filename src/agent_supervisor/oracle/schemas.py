"""Wire shape of oracle coordination decisions and its tolerant parser."""

from __future__ import annotations

import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..errors import OracleParseError

CoordinationAction = Literal["respond", "escalate", "complete", "ignore"]

_ACTIONS = {"respond", "escalate", "complete"}


class CoordinationResponse(BaseModel):
    """Structured decision returned by the oracle."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: CoordinationAction
    response: Optional[str] = None
    use_keys: bool = Field(default=False, alias="useKeys")
    keys: list[str] = Field(default_factory=list)
    reasoning: str = "No reasoning provided"

    @model_validator(mode="after")
    def _check_respond_payload(self) -> "CoordinationResponse":
        if self.use_keys and not self.keys:
            raise ValueError("useKeys requires a non-empty keys list")
        if self.action == "respond" and not self.use_keys and self.response is None:
            raise ValueError("respond needs response text or keys")
        return self

    @property
    def payload(self) -> Optional[str]:
        """Response text as recorded in the audit trail (``keys:a,b`` for key input)."""
        if self.action != "respond":
            return None
        if self.use_keys:
            return "keys:" + ",".join(self.keys)
        return self.response

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def extract_json(text: str) -> dict[str, Any] | None:
    """Try to extract a JSON object from text, handling markdown fences."""
    text = (text or "").strip()
    if text.startswith("```"):
        inner_lines = []
        started = False
        for line in text.split("\n"):
            if not started:
                if line.strip().startswith("```"):
                    started = True
                    continue
            elif line.strip() == "```":
                break
            else:
                inner_lines.append(line)
        text = "\n".join(inner_lines).strip()

    # Find first { and last }
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        value = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse_coordination_response(text: str, *, allow_ignore: bool = False) -> CoordinationResponse:
    """Parse raw oracle output into a :class:`CoordinationResponse`.

    ``respond`` must carry either ``useKeys`` with a key list or a string
    ``response``. ``ignore`` is accepted only when ``allow_ignore`` is set.

    Raises:
        OracleParseError: If the output holds no JSON object, names an unknown
            action, or is a ``respond`` without anything to send.
    """
    parsed = extract_json(text)
    if parsed is None:
        raise OracleParseError("Oracle output contains no JSON object")
    action = str(parsed.get("action") or "").strip().lower()
    valid = _ACTIONS | {"ignore"} if allow_ignore else _ACTIONS
    if action not in valid:
        raise OracleParseError(f"Oracle returned unsupported action {parsed.get('action')!r}")

    reasoning = parsed.get("reasoning")
    fields: dict[str, Any] = {
        "action": action,
        "reasoning": str(reasoning) if reasoning else "No reasoning provided",
    }
    if action == "respond":
        keys = parsed.get("keys")
        response = parsed.get("response")
        if parsed.get("useKeys") and isinstance(keys, list) and keys:
            fields["use_keys"] = True
            fields["keys"] = [str(key) for key in keys]
        elif isinstance(response, str):
            fields["response"] = response
        else:
            raise OracleParseError("Oracle respond decision has neither response text nor keys")
    return CoordinationResponse(**fields)
