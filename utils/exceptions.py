from typing import List


class KnowledgeServerException(Exception):
    """Base exception for the knowledge server."""
    pass

class ConfigurationError(KnowledgeServerException):
    """Raised at startup when configuration validation finds problems."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        listing = "\n".join(f"  {i}. {p}" for i, p in enumerate(self.problems, 1))
        super().__init__(f"Invalid configuration:\n{listing}")

class LLMException(KnowledgeServerException):
    """Exception for text-completion transport failures."""
    pass

class EmbeddingException(KnowledgeServerException):
    """Exception for embedding transport failures."""
    pass

class ConsolidationInProgressError(KnowledgeServerException):
    """A consolidation run is already in flight."""
    pass