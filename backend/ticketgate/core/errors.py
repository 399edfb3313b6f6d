"""Exception types shared by the indexer and the entry admission flow"""


class LedgerUnavailableError(RuntimeError):
    """The ledger RPC endpoint could not be reached or timed out.

    Transient: the indexer logs it, leaves its cursor untouched and retries
    on the next tick.
    """


class MalformedLedgerEventError(ValueError):
    """A ledger log entry is missing fields or carries values of the wrong shape"""


class InvalidEntryCredential(ValueError):
    """A scan credential (freshness token or timestamp) failed validation"""


class IndexerLockLostError(RuntimeError):
    """The poll lock expired or was taken over by another indexer mid-cycle"""
