from __future__ import annotations


class ReleaseError(Exception):
    """Base class for release tool errors."""


class ConfigError(ReleaseError):
    """Raised when the release config file or CLI overrides fail validation."""


class ManifestError(ReleaseError):
    """Raised when the module manifest cannot be used. Fatal for the invocation."""


class ManifestNotFound(ManifestError):
    """Raised when the manifest path does not exist."""


class ManifestParseError(ManifestError):
    """Raised when the manifest is not a well-formed JSON object."""


class ManifestSchemaError(ManifestError):
    """Raised when required manifest fields are missing or malformed."""


class InvalidVersion(ManifestError):
    """Raised when a version string does not have the expected shape."""


class BundleError(ReleaseError):
    """Raised when the declared file set cannot be bundled. Fatal for the invocation."""


class MissingDeclaredFile(BundleError):
    """Raised when a non-optional declared pattern matches no file."""


class PolicyError(ReleaseError):
    """Raised when a channel's tag or version breaks the release policy. Fatal for that channel only."""


class InvalidTag(PolicyError):
    """Raised when a tag lacks the required prefix or carries no valid version."""


class ChannelError(ReleaseError):
    """Raised when a remote release operation fails for one channel."""


class ReleaseExists(ChannelError):
    """Raised when a release already exists and updates are not allowed."""


class RetryableError(ChannelError):
    """Raised when a remote operation may succeed if retried (timeout, rate limit, 5xx)."""


class PermanentError(ChannelError):
    """Raised when a remote operation will not succeed on retry (auth, malformed payload)."""


class DeadlineExceeded(ChannelError):
    """Raised when the overall reconciliation deadline passes before a channel completes."""
