"""Token count estimates reported alongside API responses."""

from functools import lru_cache
from typing import List, Union
import tiktoken

DEFAULT_ENCODING = "cl100k_base"

PER_MESSAGE_TOKENS = 3
DIFF_COEFFICIENT = 5


@lru_cache(maxsize=None)
def get_encoding(encoding_name: str = DEFAULT_ENCODING) -> tiktoken.Encoding:
    return tiktoken.get_encoding(encoding_name)


def count_tokens(encoding: tiktoken.Encoding, text: str) -> int:
    return len(encoding.encode(text))


def estimate_tokens(value: Union[str, List[str]], encoding_name: str = DEFAULT_ENCODING) -> int:
    """Estimate the tokens consumed by a query or a list of documents.

    Lists pay a fixed per-document overhead plus a small constant on top of
    their content tokens.
    """
    encoding = get_encoding(encoding_name)
    if isinstance(value, str):
        return count_tokens(encoding, value)

    content_tokens = sum(count_tokens(encoding, text) for text in value)
    return PER_MESSAGE_TOKENS * len(value) + content_tokens + DIFF_COEFFICIENT
