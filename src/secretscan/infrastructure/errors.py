"""Exception types for secret scanning."""


class SecretScanError(Exception):
    """Base exception for secretscan errors."""

    pass


class EnumerationError(SecretScanError):
    """Secret stores or targets could not be listed. Fatal to a run."""

    pass


class TargetError(SecretScanError):
    """Base exception for failures talking to a scan target."""

    pass


class RetryableError(TargetError):
    """Error that can be retried (rate limits, temporary failures)."""

    pass


class NonRetryableError(TargetError):
    """Error that should not be retried (auth failures, invalid requests)."""

    pass


class TargetTimeoutError(TargetError):
    """A remote scan job did not complete before the poll ceiling."""

    pass


class UnsupportedTargetError(TargetError):
    """No provider is registered for a target kind, or the target lacks a capability."""

    pass


class SecretStoreError(SecretScanError):
    """A secret store could not be opened or read."""

    pass


class PersistenceError(SecretScanError):
    """Writing findings, consumers or job status to the cluster failed."""

    pass


class ConfigError(SecretScanError):
    """Invalid configuration."""

    pass
