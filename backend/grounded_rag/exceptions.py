"""Exception types raised across pipeline component boundaries."""


class GroundedRagError(Exception):
    """Base class for all pipeline errors."""


class CollaboratorError(GroundedRagError):
    """A text-generation, embedding or knowledge-store call failed."""


class GenerationError(GroundedRagError):
    """The core answer generation failed and no fallback exists."""


class TurnCancelled(GroundedRagError):
    """The current turn was aborted through its cancellation token."""


class InvalidTransition(GroundedRagError):
    """A turn event arrived in a state that has no transition for it."""
