import math

import tiktoken


def estimate_tokens(text: str) -> int:
    """Rough token estimate of ~4 characters per token.

    This is an approximation used for every budget decision in the chat path.
    It is not a tokenizer-accurate count; use ``count_tokens`` when the exact
    figure matters.
    """
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def get_tokenizer():
    # cl100k_base matches the gpt-35-turbo / gpt-4 family deployments
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return len(get_tokenizer().encode(text))
