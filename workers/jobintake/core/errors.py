from __future__ import annotations


class IntakeError(Exception):
    """Base error for a poll run that cannot continue."""


class ConfigurationError(IntakeError):
    """Raised before any network call when required configuration is missing or invalid."""


class UpstreamFetchError(IntakeError):
    """Raised when a listing call to an upstream source fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenVaultError(IntakeError):
    """Base error for the mailbox token vault."""


class VaultNotConnectedError(TokenVaultError):
    """Raised when no refresh token has been stored yet."""


class VaultPayloadError(TokenVaultError):
    """Raised when the stored encrypted payload cannot be parsed."""


class TokenDecryptionError(TokenVaultError):
    """Raised when the stored refresh token fails authenticated decryption."""


class TokenRefreshError(TokenVaultError):
    """Raised when the token endpoint is unreachable or refuses the refresh."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
