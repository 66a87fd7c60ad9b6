from __future__ import annotations

from typing import Any, Callable, Optional

from exam_pipeline.errors import ServiceError
from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.utils.rate_limit import FixedIntervalGate
from exam_pipeline.utils.types import StageResult
from exam_pipeline.workflow.llm import GenerationGateway

logger = get_logger(__name__)

# Raised by stage parsers (json.JSONDecodeError and pydantic's ValidationError are ValueErrors;
# AttributeError comes from replies whose fields have the wrong JSON type).
PARSE_ERRORS = (ValueError, TypeError, KeyError, AttributeError)


def run_stage(
    gateway: Optional[GenerationGateway],
    system_prompt: str,
    user_prompt: str,
    on_success_parse: Callable[[str], Any],
    make_fallback: Callable[[], Any],
    *,
    label: str = "stage",
    gate: Optional[FixedIntervalGate] = None,
) -> StageResult:
    """Call the gateway once and parse the reply; substitute the local fallback on any failure.

    Only service and parse failures are absorbed. Anything else (interrupts, local
    I/O errors raised by the callbacks) propagates to the caller.
    """
    if gateway is None or not getattr(gateway, "is_active", True):
        reason = "generation service inactive"
    else:
        if gate is not None:
            gate.wait()
        try:
            raw = gateway.generate(system_prompt, user_prompt)
        except ServiceError as exc:
            reason = str(exc)
        else:
            try:
                return StageResult.ok(on_success_parse(raw))
            except PARSE_ERRORS as exc:
                reason = f"unparsable response: {exc}"

    logger.warning("Generation degraded, using local fallback | stage=%s reason=%s", label, reason)
    return StageResult.degrade(make_fallback(), reason)


__all__ = ["PARSE_ERRORS", "run_stage"]
