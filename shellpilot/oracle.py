"""Text-to-command translation.

The core never interprets natural language itself; it asks an oracle for a
command string plus a risk tag. `OpenAIOracle` talks to any OpenAI-compatible
chat completions endpoint, `QuickActions` is the built-in template catalog.
"""

import json
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from shellpilot.config import DEFAULT_OPENAI_MODEL
from shellpilot.errors import OracleError
from shellpilot.utils import log_error

RISK_LEVELS = ("low", "medium", "high")

SYSTEM_PROMPT = """You are an expert Linux/Unix system administrator. Convert plain English requests into safe, accurate shell commands.

Rules:
1. Generate only safe, commonly used commands
2. Avoid destructive commands without explicit confirmation
3. Provide clear explanations
4. Assess risk level (low/medium/high)
5. Flag commands that need confirmation
6. Consider the system context if provided

System Info: {system_info}

Respond with JSON in this exact format:
{{
  "command": "the shell command",
  "explanation": "clear explanation of what the command does",
  "riskLevel": "low|medium|high",
  "requiresConfirmation": true|false
}}"""

ANALYZE_PROMPT = """Analyze this command execution failure and provide a helpful explanation and potential solution:

Command: {command}
Exit Code: {exit_code}
Output: {output}

Provide a clear, actionable explanation of what went wrong and how to fix it."""


@dataclass
class CommandSuggestion:
    command: str
    explanation: str
    risk_level: str = "medium"
    requires_confirmation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def suggestion_from_payload(payload: Dict[str, Any]) -> CommandSuggestion:
    risk = str(payload.get("riskLevel") or payload.get("risk_level") or "medium").lower()
    if risk not in RISK_LEVELS:
        risk = "medium"
    confirm = payload.get("requiresConfirmation", payload.get("requires_confirmation", False))
    return CommandSuggestion(
        command=str(payload.get("command") or ""),
        explanation=str(payload.get("explanation") or ""),
        risk_level=risk,
        requires_confirmation=bool(confirm),
    )


class QuickActions:
    CATALOG: Dict[str, CommandSuggestion] = {
        "system-info": CommandSuggestion(
            command="uname -a && cat /etc/os-release && free -h && df -h",
            explanation="Display system information including kernel version, OS details, memory usage, and disk space",
            risk_level="low",
        ),
        "disk-usage": CommandSuggestion(
            command="df -h && du -sh /var/log /tmp /home",
            explanation="Show disk space usage for the entire system and specific directories",
            risk_level="low",
        ),
        "processes": CommandSuggestion(
            command="ps aux --sort=-%cpu | head -20",
            explanation="Display the top 20 processes sorted by CPU usage",
            risk_level="low",
        ),
        "network": CommandSuggestion(
            command="ip addr show && ss -tulpn",
            explanation="Show network interfaces and listening ports",
            risk_level="low",
        ),
    }

    def names(self) -> List[str]:
        return sorted(self.CATALOG)

    def get(self, action: str) -> CommandSuggestion:
        found = self.CATALOG.get(action)
        if found is not None:
            return CommandSuggestion(**asdict(found))
        return CommandSuggestion(
            command='echo "Unknown quick action"',
            explanation="Unknown quick action requested",
            risk_level="low",
        )


class OpenAIOracle:
    def __init__(self, api_key: Optional[str], model: str = DEFAULT_OPENAI_MODEL,
                 base_url: Optional[str] = None, temperature: float = 0.1):
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._temperature = temperature
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def _ensure_client(self):
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise OracleError("OPENAI_API_KEY is not set", hint="Set OPENAI_API_KEY to enable command generation.")
        from openai import OpenAI
        kwargs = {"api_key": self._api_key}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        self._client = OpenAI(**kwargs)
        log_error(f"openai client ready (model={self._model}, base_url={self._base_url})")
        return self._client

    def generate_command(self, text: str, system_info: Optional[str] = None) -> CommandSuggestion:
        if not text or not text.strip():
            raise OracleError("plain text input required")
        client = self._ensure_client()
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT.format(system_info=system_info or "Ubuntu/Debian-based system")},
            {"role": "user", "content": text},
        ]
        try:
            response = client.chat.completions.create(
                model=self._model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=self._temperature,
            )
            raw = response.choices[0].message.content or "{}"
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise OracleError(f"Failed to generate command: invalid JSON from model: {exc}") from exc
        except Exception as exc:
            raise OracleError(f"Failed to generate command: {exc}") from exc
        if not isinstance(payload, dict):
            raise OracleError("Failed to generate command: model returned a non-object")
        return suggestion_from_payload(payload)

    def analyze_error(self, command: str, output: str, exit_code: Optional[int]) -> str:
        client = self._ensure_client()
        prompt = ANALYZE_PROMPT.format(command=command, exit_code=exit_code, output=output)
        try:
            response = client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self._temperature,
            )
        except Exception as exc:
            raise OracleError(f"Error analysis failed: {exc}") from exc
        return response.choices[0].message.content or "Unable to analyze error"
