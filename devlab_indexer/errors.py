"""Error taxonomy shared by the connector, pipeline, storage and replay engine."""


class DevlabError(Exception):
    """Base class for every error raised by devlab_indexer."""
    pass


# ---------- upstream ----------
class UpstreamConnectionError(DevlabError, ConnectionError):
    """Endpoint unreachable at start, or permanently gone. Fatal."""
    pass


class UpstreamUnavailable(DevlabError):
    """A single upstream call failed. Transient, per item."""
    pass


class NotFound(DevlabError):
    pass


class BlockNotFound(UpstreamUnavailable, NotFound):
    pass


class ReceiptUnavailable(DevlabError):
    pass


class ReceiptNotFound(ReceiptUnavailable, NotFound):
    pass


# ---------- registry ----------
class InvalidInterface(DevlabError, ValueError):
    """Contract address or ABI rejected at registration time."""
    pass


# ---------- storage ----------
class PersistenceError(DevlabError):
    pass


# ---------- replay ----------
class EmptyRange(DevlabError):
    """Replay load found no blocks in the requested range."""

    def __init__(self, start_block: int, end_block: int):
        super().__init__(f"no blocks stored in range [{start_block}, {end_block}]")
        self.start_block = start_block
        self.end_block = end_block


class InvalidRange(DevlabError, ValueError):
    pass


class SessionNotFound(DevlabError, KeyError):
    pass
