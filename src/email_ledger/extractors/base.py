"""
Extraction invoker interface and error types.

An invoker turns one source email into one ExtractionResult or raises.
Retries are not the invoker's business: a failed call is one failed
record, and the run as a whole is retried via resume.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..schemas.extraction import ExtractionResult
from ..state_store import SourceRecord


class ExtractionError(Exception):
    """Base for failures of a single extraction call."""

    pass


class ExtractionAPIError(ExtractionError):
    """Provider returned an error status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ExtractionTimeoutError(ExtractionError):
    """The call did not finish within the configured timeout."""

    pass


class ExtractionParseError(ExtractionError):
    """The model's reply was not parseable JSON."""

    pass


class ExtractionInvoker(ABC):
    """
    Base class for extraction invokers.

    Implementations must be safe to call concurrently from one event loop;
    the orchestrator dispatches a whole window at once.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Invoker name for logging and provenance."""
        pass

    @abstractmethod
    async def extract(
        self,
        record: SourceRecord,
        model_id: str,
        prompt_text: str,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> ExtractionResult:
        """
        Extract transactions from one email.

        Args:
            record: Source email
            model_id: Model to run
            prompt_text: System prompt for the extraction
            output_schema: Optional JSON schema constraining the reply

        Returns:
            Validated ExtractionResult

        Raises:
            ExtractionError: On provider, timeout or parse failures
            SchemaValidationError: If the reply does not match the result schema
        """
        pass

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None
