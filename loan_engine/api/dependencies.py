"""
Engine wiring and FastAPI dependencies
"""

from typing import Optional

from ..aggregates import HTTPAggregateReader
from ..config import LoanEngineConfig, get_config
from ..reconciliation import ReconciliationEngine
from ..storage import StorageInterface, InMemoryStorage, SQLiteStorage


class LendingSystem:
    """Loan engine with storage and optional authoritative source initialized"""

    def __init__(
        self,
        use_sqlite: bool = True,
        storage: Optional[StorageInterface] = None,
        config: Optional[LoanEngineConfig] = None,
        **engine_options
    ):
        self.config = config or get_config()

        if storage is not None:
            self.storage = storage
        elif use_sqlite:
            self.storage = SQLiteStorage.from_url(self.config.database_url)
        else:
            self.storage = InMemoryStorage()

        if 'aggregate_reader' not in engine_options:
            engine_options['aggregate_reader'] = self._create_aggregate_reader()

        self.engine = ReconciliationEngine(self.storage, config=self.config, **engine_options)

    def _create_aggregate_reader(self):
        """Create the authoritative aggregate reader based on configuration"""
        if not self.config.aggregate_source_url:
            return None

        return HTTPAggregateReader(
            base_url=self.config.aggregate_source_url,
            timeout=self.config.aggregate_timeout_seconds,
            api_key=self.config.aggregate_api_key
        )

    def close(self):
        self.storage.close()


_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Dependency returning the process-wide lending system (created on first use)"""
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem(use_sqlite=True)
    return _lending_system
