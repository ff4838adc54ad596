"""
Identity - Domain Errors

Every error here is terminal to the current operation: the enclosing
transaction is rolled back and the caller receives the specific kind.
"""


class IdentityError(Exception):
    """Base class for identity domain errors"""
    default_message = "Identity operation failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)


class UserNotFound(IdentityError):
    default_message = "User not found"


class PatientNotFound(IdentityError):
    default_message = "Patient not found"


class IdentifierSystemNotFound(IdentityError):
    default_message = "Identifier system not found"

    def __init__(self, system_code: str = None):
        self.system_code = system_code
        super().__init__(
            f"Identifier system not found: {system_code}" if system_code else None
        )


class SsnSystemNotFound(IdentityError):
    default_message = "SSN identifier system is not configured"


class MissingEmail(IdentityError):
    default_message = "A patient requires an email telecom or a registration purpose email"


class UserActivationNotFound(IdentityError):
    default_message = "User has never been activated"


class UniquenessConflict(IdentityError):
    """Raised when the store rejects a duplicate (concurrent creation)."""
    default_message = "Record conflicts with an existing record"
