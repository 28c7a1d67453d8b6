"""ACP extension method handlers."""

from __future__ import annotations

import logging
from typing import Any

from zai_acp.agent.bridge.analyzer import analyze_prompt, calculate_thinking_tokens, claude_model_from_glm
from zai_acp.log_utils import log_event

logger = logging.getLogger(__name__)

EXT_METHOD_NAMES: tuple[str, ...] = ("model/list", "model/set", "prompt/analyze")


def _session_id(payload: dict[str, Any]) -> str | None:
    return payload.get("session_id") or payload.get("sessionId")


class ExtensionsMixin:
    async def ext_method(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Handle extension methods for model listing/selection and prompt analysis."""
        if name == "model/list":
            session = self._sessions.get(_session_id(payload) or "")
            if session is None:
                return {"error": "session_id required"}
            models = [{"id": session.model_id, "description": ""}] if session.model_id else []
            models.extend(
                {"id": model.model_id, "description": model.description or ""} for model in session.available_models
            )
            return {"current": session.model_id, "models": models}
        if name == "model/set":
            session_id = _session_id(payload)
            model_id = payload.get("model_id") or payload.get("modelId")
            if not session_id or not model_id:
                return {"error": "session_id and model_id required"}
            try:
                await self.set_session_model(model_id, session_id)
            except Exception as exc:  # noqa: BLE001
                return {"error": str(exc)}
            return {"current": self._sessions.require(session_id).model_id}
        if name == "prompt/analyze":
            analysis = analyze_prompt(str(payload.get("text") or ""))
            return {
                "complexity": analysis.complexity,
                "taskType": analysis.task_type,
                "score": analysis.score,
                "reasoning": analysis.reasoning,
                "model": analysis.profile.model,
                "claudeModel": claude_model_from_glm(analysis.profile.model),
                "effort": analysis.profile.effort,
                "maxThinkingTokens": analysis.profile.max_thinking_tokens,
                "thinkingTokens": calculate_thinking_tokens(
                    analysis.profile.effort, analysis.profile.max_thinking_tokens
                ),
            }
        return {"error": f"Unknown ext method: {name}"}

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        """Extension notifications are accepted and logged."""
        log_event(logger, "acp.ext_notification", method=method, params_keys=sorted(params.keys()))
