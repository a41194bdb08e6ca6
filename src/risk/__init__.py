"""Risk guardrail for new entries and account posture."""

from src.risk.risk_manager import RiskCheck, RiskGuardrail, RiskRule, create_risk_guardrail

__all__ = ["RiskCheck", "RiskGuardrail", "RiskRule", "create_risk_guardrail"]
