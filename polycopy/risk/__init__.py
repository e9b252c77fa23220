"""Pre-execution risk checks for copied trades."""

from polycopy.risk.gate import RiskDecision, RiskGate

__all__ = ["RiskDecision", "RiskGate"]
