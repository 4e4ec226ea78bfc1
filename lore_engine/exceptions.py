"""Exception hierarchy for the lore engine."""


class LoreEngineError(Exception):
    """Base exception for all lore engine errors."""
    pass


class KnowledgeEntryNotFoundError(LoreEngineError):
    """Requested knowledge entry does not exist."""
    
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Knowledge entry not found: {entry_id}")


class EmbeddingUnavailableError(LoreEngineError):
    """Embedding model could not be loaded or failed to encode."""
    pass


class VectorizationError(LoreEngineError):
    """Vectorizing a knowledge entry failed."""
    
    def __init__(self, entry_id: str, reason: str):
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"Vectorization failed for entry {entry_id}: {reason}")


class InterchangeError(LoreEngineError):
    """Base exception for lorebook and character card parsing errors."""
    pass


class InvalidContainerError(InterchangeError):
    """File is not a valid image container."""
    pass


class MissingCardDataError(InterchangeError):
    """Image container carries no character card metadata."""
    pass


class UnrecognizedFormatError(InterchangeError):
    """Card JSON does not match any known card schema."""
    pass


class InvalidWorldBookError(InterchangeError):
    """Standalone lorebook JSON could not be used."""
    pass
