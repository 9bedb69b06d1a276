"""
Tier-based authorization rules.

Tier 1 is the highest authority; a numerically larger tier has less
authority. Every rule here is a pure predicate over tier numbers so it
can be evaluated without touching storage.
"""

from typing import Optional

from .config import AccessSettings
from .errors import Forbidden, InsufficientAuthority, InvalidParameter
from .models import Document, User


def can_view(user_tier: int, minimum_tier_level: int) -> bool:
    """A user sees a document iff they hold at least the required authority."""
    return user_tier <= minimum_tier_level


def can_issue_code_for(issuer_tier: int, target_tier: int) -> bool:
    """Codes may only admit users of strictly lower authority than the issuer."""
    return target_tier > issuer_tier


def can_gate_document(uploader_tier: int, minimum_tier_level: int) -> bool:
    """Uploaders may require same-or-stricter access than their own tier, never looser."""
    return minimum_tier_level >= uploader_tier


def can_delete_document(actor: User, document: Document) -> bool:
    """The uploader, or anyone holding the authority the document requires."""
    if document.uploaded_by == actor.user_id:
        return True
    return actor.tier_level <= document.minimum_tier_level


def can_deactivate(actor_tier: int, target_tier: int) -> bool:
    return target_tier > actor_tier


class TierPolicy:
    """
    Tier rules bound to deployment settings.

    Wraps the pure predicates above with the configured thresholds and
    raises typed errors naming the violated rule.
    """

    def __init__(self, settings: AccessSettings):
        self.settings = settings

    def has_global_view(self, tier_level: int) -> bool:
        return tier_level <= self.settings.global_view_tier

    def is_admin(self, tier_level: int) -> bool:
        return tier_level <= self.settings.admin_tier

    def check_tier_level(self, tier_level: int, name: str = "tier level") -> None:
        """
        Validate that a tier number exists.

        Raises:
            InvalidParameter: If the tier is outside 1..max_tier_level
        """
        if tier_level < 1 or tier_level > self.settings.max_tier_level:
            raise InvalidParameter(
                f"{name} must be between 1 and {self.settings.max_tier_level}"
            )

    def require_code_issuance(self, issuer: User, target_tier: int) -> None:
        """
        Require that ``issuer`` may mint a code for ``target_tier``.

        Raises:
            InsufficientAuthority: If the target tier is not strictly below the issuer's
            InvalidParameter: If the target tier does not exist
        """
        if not can_issue_code_for(issuer.tier_level, target_tier):
            raise InsufficientAuthority(
                f"cannot create an access code for tier {target_tier}: "
                f"codes must target a tier lower than your own (tier {issuer.tier_level})"
            )
        self.check_tier_level(target_tier, "target tier level")

    def require_document_gate(self, uploader: User, minimum_tier_level: int) -> None:
        """
        Raises:
            InvalidParameter: If the gate is looser than the uploader's tier or out of range
        """
        if not can_gate_document(uploader.tier_level, minimum_tier_level):
            raise InvalidParameter(
                "cannot set minimum tier level higher than your own tier level"
            )
        self.check_tier_level(minimum_tier_level, "minimum tier level")

    def require_delete(self, actor: User, document: Document) -> None:
        if not can_delete_document(actor, document):
            raise Forbidden(
                "only the uploader or a user at tier "
                f"{document.minimum_tier_level} or above may delete this document"
            )

    def require_deactivate(self, actor: User, target: User) -> None:
        if not can_deactivate(actor.tier_level, target.tier_level):
            raise Forbidden("you can only deactivate users in lower tier levels")

    def require_admin(self, actor: User, action: Optional[str] = None) -> None:
        if not self.is_admin(actor.tier_level):
            raise Forbidden(
                f"insufficient permissions to {action or 'perform this action'}: "
                f"requires tier {self.settings.admin_tier} or above"
            )
