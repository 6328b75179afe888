"""
Conflict resolution for aggregated permission decisions.
"""

from typing import Any, Iterable

from shared.logging import get_logger
from .models import DecisionSource, PermissionDecision, PermissionEffect, enum_value


NO_APPLICABLE_GRANT = "no applicable grant"


class ConflictResolver:
    """Reduces candidate decisions to one final decision.

    Precedence is deny-overrides-allow and nothing else: one explicit deny
    beats any number of allows, whatever their scope. With no candidates
    the result is a default deny. The witness reported for the outcome is
    the smallest decision by ``PermissionDecision.sort_key``, so the result
    does not depend on the order candidates were collected in.
    """

    def __init__(self):
        self.logger = get_logger("permissions.resolver")

    def resolve(self, decisions: Iterable[PermissionDecision], resource_type: Any,
                resource_id: str, action: Any) -> PermissionDecision:
        ordered = sorted(decisions, key=lambda d: d.sort_key)

        if not ordered:
            return PermissionDecision(
                resource_type=enum_value(resource_type),
                resource_id=resource_id,
                action=enum_value(action),
                effect=PermissionEffect.DENY,
                source=DecisionSource.DEFAULT,
                reason=NO_APPLICABLE_GRANT
            )

        denies = [d for d in ordered if d.effect == PermissionEffect.DENY]
        if denies:
            witness = denies[0]
            overridden = len(ordered) - len(denies)
            reason = f"explicit deny: {witness.reason}"
            if overridden:
                reason += f" (overrides {overridden} allow grant{'s' if overridden != 1 else ''})"
        else:
            witness = ordered[0]
            reason = f"allowed: {witness.reason}"

        self.logger.debug(
            "Resolved permission decision",
            effect=witness.effect.value,
            candidates=len(ordered),
            denies=len(denies),
            source_role_id=witness.source_role_id
        )
        return witness.model_copy(update={"reason": reason})
