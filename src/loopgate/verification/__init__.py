from loopgate.verification.gate import VERIFY_TOOL_NAMES, TaskStatusGate, TaskStatusGateResult
from loopgate.verification.oracle import OracleVerdict, OracleVerifier
from loopgate.verification.tracker import VerificationScope, VerificationTracker

__all__ = [
    "OracleVerdict",
    "OracleVerifier",
    "TaskStatusGate",
    "TaskStatusGateResult",
    "VERIFY_TOOL_NAMES",
    "VerificationScope",
    "VerificationTracker",
]
