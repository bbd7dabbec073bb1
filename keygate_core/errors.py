"""
keygate_core.errors
-------------------
Error taxonomy shared by every KeyGate component.

- TransientError: safe to retry the whole request later
- IntegrityError: authentication failure on ciphertext; fail closed
- PolicyError: request rejected for a user-actionable reason
- ConfigurationError: the service cannot run as configured

Messages never carry key material.
"""

from __future__ import annotations


class KeygateError(Exception):
    code = "KEYGATE_ERROR"


# ---------------------------
# Transient (retriable)
# ---------------------------

class TransientError(KeygateError):
    code = "TRY_AGAIN"


class KmsUnavailableError(TransientError):
    code = "KMS_UNAVAILABLE"


class LedgerUnavailableError(TransientError):
    code = "LEDGER_UNAVAILABLE"


# ---------------------------
# Integrity
# ---------------------------

class IntegrityError(KeygateError):
    code = "INTEGRITY_FAILURE"


# ---------------------------
# Policy violations
# ---------------------------

class PolicyError(KeygateError):
    code = "POLICY_VIOLATION"


class ReplayDetectedError(PolicyError):
    code = "TX_ALREADY_USED"


class ListingWithdrawnError(PolicyError):
    code = "LISTING_WITHDRAWN"


class NotAssetOwnerError(PolicyError):
    code = "NOT_ASSET_OWNER"


class AlreadyRevokedError(PolicyError):
    code = "ALREADY_REVOKED"


class InvalidOrderStateError(PolicyError):
    code = "INVALID_ORDER_STATE"


class OrderExpiredError(PolicyError):
    code = "ORDER_EXPIRED"


class ConsentRequiredError(PolicyError):
    code = "CONSENT_REQUIRED"


class AlreadyPurchasedError(PolicyError):
    code = "ALREADY_PURCHASED"


class SelfPurchaseError(PolicyError):
    code = "SELF_PURCHASE"


class AlreadyWithdrawnError(PolicyError):
    code = "ALREADY_WITHDRAWN"


class ValidationError(PolicyError):
    code = "INVALID_INPUT"


# ---------------------------
# Lookups / permanent backend errors
# ---------------------------

class NotFoundError(KeygateError):
    code = "NOT_FOUND"


class KmsError(KeygateError):
    code = "KMS_ERROR"


class KeyVersionNotFoundError(KmsError):
    code = "KEY_VERSION_NOT_FOUND"


class LedgerError(KeygateError):
    code = "LEDGER_ERROR"


class ConfigurationError(KeygateError):
    code = "CONFIGURATION_ERROR"


class DuplicateRecordError(KeygateError):
    code = "DUPLICATE_RECORD"
