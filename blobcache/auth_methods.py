"""Authentication methods accepted by the blob storage proxy backend."""

_AUTH_METHODS = (
    "client_certificate",
    "client_secret",
    "environment_credential",
    "shared_key",
    "default",
)


def get_auth_methods() -> list[str]:
    """All supported authentication method names, in a fixed order."""
    return list(_AUTH_METHODS)


def is_valid_auth_method(auth_method: str) -> bool:
    """Whether `auth_method` names a supported authentication method."""
    return auth_method in _AUTH_METHODS