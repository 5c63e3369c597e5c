from __future__ import annotations

from typing import Any


class SkillMintError(Exception):
    """Base error for SkillMint.

    Every error carries a stable ``code``, the HTTP status it maps to and
    optional typed ``fields`` that are returned to the caller verbatim.
    """

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, **fields: Any) -> None:
        self.message = message or self.default_message
        self.fields = fields
        super().__init__(self.message)


# Error kinds.


class NotFoundError(SkillMintError):
    """Package, installation, knowledge or subscription missing."""

    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ForbiddenError(SkillMintError):
    """Caller lacks ownership, role or tier for the operation."""

    code = "FORBIDDEN"
    status_code = 403
    default_message = "Forbidden"


class ConflictError(SkillMintError):
    """State conflict such as duplicates or exhausted editions."""

    code = "CONFLICT"
    status_code = 409
    default_message = "Conflict"


class ValidationFailedError(SkillMintError):
    """Inbound payload violates the schema."""

    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Validation error"


class CryptoAuthFailure(SkillMintError):
    """AEAD tag mismatch while unwrapping a DEK or decrypting knowledge."""

    code = "CRYPTO_AUTH_FAILURE"
    status_code = 500
    default_message = "Authenticated decryption failed"


class ReasonerUnavailableError(SkillMintError):
    """External reasoning service failed or timed out."""

    code = "REASONER_UNAVAILABLE"
    status_code = 503
    default_message = "Reasoning service unavailable, retry later"


class DependencyUnavailableError(SkillMintError):
    """Database or another dependency is unreachable."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    default_message = "Service temporarily unavailable, retry later"


class InternalError(SkillMintError):
    """Unclassified failure."""


# Typed leaves.


class PackageNotFound(NotFoundError):
    code = "PACKAGE_NOT_FOUND"
    default_message = "Package not found"


class PackageInactive(PackageNotFound):
    code = "PACKAGE_INACTIVE"
    default_message = "Package is not accepting new installations"


class InstallationNotFound(NotFoundError):
    code = "INSTALLATION_NOT_FOUND"
    default_message = "Installation not found"


class KnowledgeUnavailable(NotFoundError):
    code = "KNOWLEDGE_UNAVAILABLE"
    default_message = "No encrypted knowledge found for this skill"


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"
    default_message = "User not found"


class TierInsufficient(ForbiddenError):
    code = "TIER_INSUFFICIENT"
    default_message = "Subscription tier required"


class NotPackageAuthor(ForbiddenError):
    code = "NOT_PACKAGE_AUTHOR"
    default_message = "Only the package author can perform this action"


class AdminRequired(ForbiddenError):
    code = "ADMIN_REQUIRED"
    default_message = "Admin role required"


class DuplicateInstall(ConflictError):
    code = "DUPLICATE_INSTALL"
    default_message = "Package already installed"


class EditionLimitReached(ConflictError):
    code = "EDITION_LIMIT_REACHED"
    default_message = "Edition limit reached"


class SlugTaken(ConflictError):
    code = "SLUG_TAKEN"
    default_message = "Package slug already exists"


class AlreadyMinted(ConflictError):
    code = "ALREADY_MINTED"
    default_message = "Package already minted"


class KnowledgeAlreadyRevoked(ConflictError):
    code = "KNOWLEDGE_ALREADY_REVOKED"
    default_message = "Knowledge already revoked"


class AttestationRequired(ValidationFailedError):
    code = "ATTESTATION_REQUIRED"
    default_message = "graduationCertificate is required for rare and above"


class QuotaExceeded(SkillMintError):
    code = "QUOTA_EXCEEDED"
    status_code = 402
    default_message = "Subscription quota exhausted"


class ConfigurationError(SkillMintError):
    """Missing or invalid process configuration."""

    code = "CONFIGURATION_ERROR"
