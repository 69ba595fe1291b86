"""Base agent interface for the import pipeline."""
from abc import ABC, abstractmethod
from sqlalchemy.orm import Session
from models import StatementImport


class BaseAgent(ABC):
    """A pipeline stage. Agents never move the import's status themselves;
    the orchestrator does that around each ``run``."""

    name: str = "base"

    @abstractmethod
    def run(self, statement_import: StatementImport, db: Session, **kwargs) -> dict:
        """
        Execute the stage for one import.

        Returns:
            dict with keys:
                - results: dict — structured results for the orchestrator
                - summary: str — human-readable summary for the logs
        """
        pass
