from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class GenerationResult:
    success: bool
    result_url: Optional[str] = None
    credits_used: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    # False for failures that will not improve on retry (bad prompt, unknown model).
    retryable: bool = True

    @classmethod
    def failure(cls, error: str, *, retryable: bool = True, **metadata: Any) -> "GenerationResult":
        return cls(success=False, error=error, retryable=retryable, metadata=metadata)


class GenerationProvider(ABC):
    """
    Abstract base class for all generation providers.
    """

    @abstractmethod
    def generate(self, type: str, prompt: str, model: str, params: Dict[str, Any]) -> GenerationResult:
        """
        Run one generation request.

        Args:
            type: "image" or "video".
            prompt: Validated prompt text.
            model: Catalog key of the model.
            params: Validated, provider-agnostic options (size, quantity, duration...).

        Returns:
            GenerationResult. Implementations may also raise; callers treat an
            exception the same as ``success=False``.
        """
        pass
