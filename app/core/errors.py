from __future__ import annotations


class AccessError(Exception):
    """Base for every outcome the gate flow reports back to a guard or resident."""
    code = "access_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class CredentialNotFound(AccessError):
    """Credential not found or expired"""
    code = "credential_not_found"
    status_code = 404


class CredentialExpired(AccessError):
    """Credential has expired"""
    code = "credential_expired"


class CredentialInvalid(AccessError):
    """Invalid or tampered credential"""
    code = "credential_invalid"


class IllegalTransitionError(AccessError):
    """Transition not allowed from the current status"""
    code = "illegal_transition"
    status_code = 409

    def __init__(self, message: str | None = None, *, current=None, event=None):
        self.current = current
        self.event = event
        super().__init__(message)


class AlreadyAdmitted(IllegalTransitionError):
    """Entry has already been admitted"""
    code = "already_admitted"


class EntryNotFound(AccessError):
    """Entry not found"""
    code = "entry_not_found"
    status_code = 404


class AccessDenied(AccessError):
    """Access denied"""
    code = "access_denied"
    status_code = 403


class StoreUnavailable(AccessError):
    """Backing store unavailable, try again"""
    code = "store_unavailable"
    status_code = 503
    retryable = True
