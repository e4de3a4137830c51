"""Error taxonomy for the SAML Service Provider engine.

Every error carries two messages:
- ``str(error)``: the detailed reason, for operator logs only.
- ``error.public_message``: a fixed, generic text that is safe to show to
  the end user. It never reveals which check failed.
"""

from __future__ import annotations


class SAMLError(Exception):
    """Base exception for all SAML engine errors."""

    code = "saml_error"
    public_message = "Authentication failed."

    def __init__(self, detail: str = "", *, message_id: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail
        self.message_id = message_id


class ConfigurationError(SAMLError):
    """Raised at startup when keys, certificates or required settings are bad."""

    code = "configuration_error"
    public_message = "The service is not configured correctly."


class ValidationError(SAMLError):
    """Base class for inbound message validation failures.

    All subclasses are terminal for the request that raised them.
    """

    code = "validation_error"


class MalformedMessage(ValidationError):
    """The message could not be decoded or parsed, or is structurally wrong."""

    code = "malformed_message"


class ResponseStatusError(MalformedMessage):
    """The IdP answered with a non-success top-level status."""

    code = "response_status"


class SignatureInvalid(ValidationError):
    """No signature verified against a trusted IdP certificate."""

    code = "signature_invalid"


class DecryptionFailed(ValidationError):
    """An encrypted element could not be decrypted with the SP key."""

    code = "decryption_failed"


class AssertionExpired(ValidationError):
    """The assertion is outside its validity window."""

    code = "assertion_expired"


class AudienceMismatch(ValidationError):
    """The assertion is not addressed to this SP."""

    code = "audience_mismatch"


class ResponseNotRequested(ValidationError):
    """The response does not answer a live request, or was already consumed."""

    code = "response_not_requested"


class NotAuthenticated(SAMLError):
    """No active session exists for the caller."""

    code = "not_authenticated"
    public_message = "You were not already logged in."


class SLOTransportFailure(SAMLError):
    """The IdP was unreachable or refused the backchannel logout."""

    code = "slo_transport_failure"
    public_message = (
        "You have been logged out of this application, but your session "
        "at the identity provider may still be active."
    )
