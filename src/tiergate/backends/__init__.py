from tiergate.backends.memory import MemoryLedgerBackend
from tiergate.backends.sqlite import SqliteLedgerBackend

__all__ = ["MemoryLedgerBackend", "SqliteLedgerBackend"]
