class AccessManagementError(Exception):
    pass


class ValidationError(AccessManagementError):
    """Malformed or unsupported input. Fatal for the event or request."""


class UnsupportedAssetError(ValidationError):
    pass


class DataIntegrityError(AccessManagementError):
    """Catalog metadata is missing what cross-account vending needs."""


class UserNotAuthorized(AccessManagementError):
    pass


class AssetNotAuthorized(AccessManagementError):
    pass


class AssetNotFound(AccessManagementError):
    pass


class UpstreamUnavailable(AccessManagementError):
    pass


class MisconfiguredError(AccessManagementError):
    pass


class PermissionsBoundaryError(AccessManagementError):
    """An existing project role is not bound by the expected permissions boundary."""
