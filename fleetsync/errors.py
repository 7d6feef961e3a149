class FatalSyncError(Exception):
    """A failure that aborts the whole sync run."""


class ProviderError(Exception):
    """Base class for telematics provider failures."""


class CredentialError(ProviderError, FatalSyncError):
    """The provider refused or failed to issue an access token."""


class RosterFetchError(ProviderError, FatalSyncError):
    """The fleet vehicle roster could not be retrieved."""


class ProviderPayloadError(ProviderError):
    """A provider response did not match the expected record shape."""


class RollupError(FatalSyncError):
    """Department rollup aggregation failed."""


class SyncStateError(Exception):
    """A sync run was asked to leave a state it is not in."""
