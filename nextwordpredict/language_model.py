"""Defines the language model base class."""
from abc import ABC, abstractmethod
from typing import List


class LanguageModel(ABC):
    """Parent class for next word suggestion models."""

    @classmethod
    def name(cls) -> str:
        """Model name used for configuration"""
        suffix = 'SuggestionModel'
        if cls.__name__.endswith(suffix):
            return cls.__name__[0:-len(suffix)].upper()
        return cls.__name__.upper()

    @abstractmethod
    def predict_next_words(self,
                           text: str,
                           top_k: int = 5,
                           temperature: float = 1.0) -> List[str]:
        """
        Suggest text that could follow what has been typed so far.
        Args:
            text - everything typed so far
            top_k - maximum number of suggestions
            temperature - sampling temperature, must be > 0

        Response:
            Ordered list of suggestion strings, empty if the model is not available
        """
        ...

    @abstractmethod
    def load(self) -> None:
        """Load model from the provided assets/path"""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the model and tokenizer"""
        ...
