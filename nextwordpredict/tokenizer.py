"""Tokenizer service handles used by the decoding engine.

A tokenizer is owned by whoever composes the engine: it is loaded explicitly with load(),
released with close(), and reports a failed load by returning False instead of raising.
Encoding or decoding with a tokenizer that is not loaded raises TokenizerUnavailableException.
"""
from abc import ABC, abstractmethod
import sys
from typing import List, Optional

import sentencepiece as spm
from transformers import AutoTokenizer

from nextwordpredict.exceptions import TokenizerUnavailableException

# The special "Lower One Eighth Block" character SentencePiece uses for spaces
SPIECE_UNDERLINE = "▁"


class TokenizerService(ABC):
    """Parent class for tokenizer services."""

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        ...

    @property
    @abstractmethod
    def bos_id(self) -> Optional[int]:
        """Beginning of sequence token id, or None if the tokenizer has none"""
        ...

    @property
    @abstractmethod
    def vocab_size(self) -> int:
        ...

    @abstractmethod
    def load(self) -> bool:
        """Load the tokenizer model, returns False on failure"""
        ...

    @abstractmethod
    def _encode(self, text: str) -> List[int]:
        ...

    @abstractmethod
    def _decode(self, token_id: int) -> str:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def encode(self, text: str) -> List[int]:
        """
        Convert text to token ids
        :param text: text using normal space characters
        :return: list of token ids
        """
        if not self.is_loaded:
            raise TokenizerUnavailableException("Tokenizer is not loaded")
        return self._encode(text)

    def decode(self, token_id: int) -> str:
        """
        Convert one token id to its text fragment, with spaces restored
        :param token_id: token id
        :return: text fragment
        """
        if not self.is_loaded:
            raise TokenizerUnavailableException("Tokenizer is not loaded")
        return self._decode(token_id)


class SentencePieceTokenizer(TokenizerService):
    """SentencePiece model file, e.g. the tokenizer.model shipped with Gemma"""

    def __init__(self, model_path: str):
        self.model_path = model_path
        self.processor = None

    @property
    def is_loaded(self) -> bool:
        return self.processor is not None

    @property
    def bos_id(self) -> Optional[int]:
        if not self.is_loaded:
            raise TokenizerUnavailableException("Tokenizer is not loaded")
        bos = self.processor.bos_id()
        return bos if bos >= 0 else None

    @property
    def vocab_size(self) -> int:
        if not self.is_loaded:
            raise TokenizerUnavailableException("Tokenizer is not loaded")
        return self.processor.get_piece_size()

    def load(self) -> bool:
        if self.is_loaded:
            return True
        try:
            self.processor = spm.SentencePieceProcessor(model_file=self.model_path)
        except (OSError, RuntimeError) as e:
            print(f"ERROR: failed to load SentencePiece model {self.model_path}: {e}", file=sys.stderr)
            self.processor = None
            return False
        return True

    def _encode(self, text: str) -> List[int]:
        return self.processor.encode(text.replace(" ", SPIECE_UNDERLINE))

    def _decode(self, token_id: int) -> str:
        return self.processor.id_to_piece(token_id).replace(SPIECE_UNDERLINE, " ")

    def close(self) -> None:
        self.processor = None


class HuggingFaceTokenizer(TokenizerService):
    """Tokenizer of a Hugging Face model, loaded with AutoTokenizer"""

    def __init__(self, lang_model_name: str):
        self.model_name = lang_model_name
        self.tokenizer = None

    @property
    def is_loaded(self) -> bool:
        return self.tokenizer is not None

    @property
    def bos_id(self) -> Optional[int]:
        if not self.is_loaded:
            raise TokenizerUnavailableException("Tokenizer is not loaded")
        return self.tokenizer.bos_token_id

    @property
    def vocab_size(self) -> int:
        if not self.is_loaded:
            raise TokenizerUnavailableException("Tokenizer is not loaded")
        return self.tokenizer.vocab_size

    def load(self) -> bool:
        if self.is_loaded:
            return True
        try:
            self.tokenizer = AutoTokenizer.from_pretrained(self.model_name, use_fast=False)
        except (OSError, ValueError) as e:
            print(f"ERROR: {self.model_name} is not a valid tokenizer on HuggingFace: {e}", file=sys.stderr)
            self.tokenizer = None
            return False
        return True

    def _encode(self, text: str) -> List[int]:
        # BOS is added by the context tracker, never in the middle of a continuation
        return self.tokenizer.encode(text, add_special_tokens=False)

    def _decode(self, token_id: int) -> str:
        piece = self.tokenizer.convert_ids_to_tokens(token_id)
        if piece is None:
            return ""
        # SentencePiece vocabularies lose the leading space when converted to a string
        if piece.startswith(SPIECE_UNDERLINE):
            return piece.replace(SPIECE_UNDERLINE, " ")
        return self.tokenizer.convert_tokens_to_string([piece])

    def close(self) -> None:
        self.tokenizer = None
