from loopgate.backpressure.base import (
    Block,
    Guardrail,
    GuardrailContext,
    GuardrailResult,
    NoOpGuardrail,
    Pass,
    Warn,
    result_to_dict,
)
from loopgate.backpressure.churn import ChurnDetectionGuardrail
from loopgate.backpressure.pipeline import GuardrailPipeline
from loopgate.backpressure.quality_gate import QualityGateGuardrail, verification_key
from loopgate.backpressure.resource_limit import ResourceLimitGuardrail
from loopgate.backpressure.tool_discipline import ToolDisciplineGuardrail

__all__ = [
    "Block",
    "ChurnDetectionGuardrail",
    "Guardrail",
    "GuardrailContext",
    "GuardrailPipeline",
    "GuardrailResult",
    "NoOpGuardrail",
    "Pass",
    "QualityGateGuardrail",
    "ResourceLimitGuardrail",
    "ToolDisciplineGuardrail",
    "Warn",
    "result_to_dict",
    "verification_key",
]
