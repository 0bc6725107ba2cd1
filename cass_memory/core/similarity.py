# cass_memory/core/similarity.py
import re
from collections.abc import Callable, Iterable

from datasketch import MinHash  # type: ignore

from cass_memory.utils import content_hash

from .config import CassConfig
from .schema import Bullet

SimilarityFn = Callable[[str, str], float]

# Keeps technical terms together: c++, node.js, user_id, pre-commit
_TOKEN_RE = re.compile(r"[a-z0-9]+(?:[._\-+]+[a-z0-9]+)*")

__all__ = [
    "MinHashSimilarity",
    "SimilarityFn",
    "content_hash",
    "find_similar_bullet",
    "get_similarity",
    "jaccard_similarity",
    "tokenize",
]


def tokenize(text: str) -> list[str]:
    if not text:
        return []
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= 2]


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Exact token-set Jaccard similarity in [0, 1]."""
    tokens_a = set(tokenize(text_a))
    tokens_b = set(tokenize(text_b))

    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0

    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


class MinHashSimilarity:
    """
    Estimates token Jaccard similarity with MinHash signatures.

    Signatures are cached per text, so comparing one candidate against a whole
    playbook hashes each bullet once. Same call signature as jaccard_similarity.
    """

    def __init__(self, num_perm: int = 128):
        self.num_perm = num_perm
        self._signatures: dict[str, MinHash] = {}

    def __call__(self, text_a: str, text_b: str) -> float:
        tokens_a = set(tokenize(text_a))
        tokens_b = set(tokenize(text_b))
        if not tokens_a and not tokens_b:
            return 1.0
        if not tokens_a or not tokens_b:
            return 0.0
        if tokens_a == tokens_b:
            return 1.0
        return float(self._signature(text_a, tokens_a).jaccard(self._signature(text_b, tokens_b)))

    def _signature(self, text: str, tokens: set[str]) -> MinHash:
        """Generate (or reuse) the MinHash signature for text."""
        key = content_hash(text)
        cached = self._signatures.get(key)
        if cached is not None:
            return cached
        m = MinHash(num_perm=self.num_perm)
        for token in tokens:
            m.update(token.encode("utf8"))
        self._signatures[key] = m
        return m


def get_similarity(config: CassConfig) -> SimilarityFn:
    """Resolve the configured similarity backend."""
    if config.curation.similarity_backend == "minhash":
        return MinHashSimilarity()
    return jaccard_similarity


def find_similar_bullet(
    content: str,
    bullets: Iterable[Bullet],
    threshold: float,
    similarity: SimilarityFn = jaccard_similarity,
) -> Bullet | None:
    """
    Find a bullet whose content is at least ``threshold`` similar to ``content``.

    Live bullets are preferred so a deprecated match never hides a valid one;
    deprecated bullets are still matched afterwards so blocked content is not
    re-added under a new id.

    Returns:
        The first matching Bullet, or None
    """
    pool = list(bullets)
    for bullet in pool:
        if bullet.is_live and similarity(content, bullet.content) >= threshold:
            return bullet
    for bullet in pool:
        if not bullet.is_live and similarity(content, bullet.content) >= threshold:
            return bullet
    return None
