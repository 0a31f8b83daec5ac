"""Exception hierarchy shared by every layer."""


class ReciterError(Exception):
    """Base class for all reciter errors."""


class MigrationError(ReciterError):
    """A persisted id has no unambiguous migration target.

    This signals corrupted or contradictory state (two documents or two units
    claiming the same canonical id); it is never recovered from silently.
    """


class UnknownDocumentError(ReciterError, KeyError):
    def __init__(self, document_id: str):
        super().__init__(document_id)
        self.document_id = document_id

    def __str__(self) -> str:
        return f"Unknown document: {self.document_id}"


class UnknownUnitError(ReciterError, KeyError):
    def __init__(self, document_id: str, unit_id: str):
        super().__init__(unit_id)
        self.document_id = document_id
        self.unit_id = unit_id

    def __str__(self) -> str:
        return f"Unknown unit '{self.unit_id}' in document '{self.document_id}'"


class MirrorError(ReciterError):
    """Transport or backend failure while talking to the remote mirror."""


class FanoutError(MirrorError):
    """Some per-group upserts of a fan-out write failed.

    The successful groups are not rolled back; ``failures`` maps each failed
    group id to its error so callers can retry just those.
    """

    def __init__(self, failures: dict[str, BaseException], succeeded: list[str] | None = None):
        self.failures = failures
        self.succeeded = succeeded or []
        groups = ", ".join(sorted(failures))
        super().__init__(f"Fan-out failed for {len(failures)} group(s): {groups}")
