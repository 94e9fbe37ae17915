from __future__ import annotations

import math
import re
import secrets
from collections import Counter
from typing import Dict, Optional

from ..config import settings
from ..exceptions import CodeGenerationError, MalformedCodeError
from ..models.activation_code import EntropyAnalysis


_TRIPLE_RUN = re.compile(r"(.)\1{2,}")
_REPEATED_BLOCK = re.compile(r"(.{2,})\1")
_SEPARATORS = re.compile(r"[\s\-]+")

MIN_DISTINCT_CHARS = 4


def normalize_code(raw: str) -> str:
    """Strip hyphens/whitespace and uppercase user input before lookup."""
    return _SEPARATORS.sub("", raw or "").upper()


class SecureCodeGenerator:
    """
    Produces activation codes from a human-friendly alphabet.

    Every character comes from the OS CSPRNG (`secrets`); codes double as
    bearer credentials. Candidates matching a weak pattern are discarded
    and redrawn, up to `max_attempts` times.
    """

    def __init__(
        self,
        alphabet: str = settings.CODE_ALPHABET,
        length: int = settings.CODE_LENGTH,
        max_attempts: int = settings.MAX_ATTEMPTS_PER_CODE,
        high_entropy_ratio: float = settings.HIGH_ENTROPY_RATIO,
    ) -> None:
        if len(set(alphabet)) != len(alphabet):
            raise ValueError("alphabet must not contain duplicate symbols")
        if len(alphabet) < MIN_DISTINCT_CHARS or length < MIN_DISTINCT_CHARS:
            raise ValueError("alphabet and code length must allow 4 distinct symbols")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")

        self.alphabet = alphabet
        self.length = length
        self.max_attempts = max_attempts
        self.high_entropy_ratio = high_entropy_ratio
        self._index: Dict[str, int] = {ch: i for i, ch in enumerate(alphabet)}

    @property
    def keyspace(self) -> int:
        return len(self.alphabet) ** self.length

    def generate(self) -> str:
        for _ in range(self.max_attempts):
            code = "".join(secrets.choice(self.alphabet) for _ in range(self.length))
            if self.is_strong(code):
                return code
        raise CodeGenerationError(
            f"failed to generate a strong code after {self.max_attempts} attempts"
        )

    def is_strong(self, code: str) -> bool:
        if len(code) != self.length:
            return False
        if any(ch not in self._index for ch in code):
            return False

        # AAA
        if _TRIPLE_RUN.search(code):
            return False

        # ABC / CBA in alphabet order
        idx = [self._index[ch] for ch in code]
        for a, b, c in zip(idx, idx[1:], idx[2:]):
            if b - a == 1 and c - b == 1:
                return False
            if a - b == 1 and b - c == 1:
                return False

        # XYXY, XYZXYZ, ...
        if _REPEATED_BLOCK.search(code):
            return False

        return len(set(code)) >= MIN_DISTINCT_CHARS

    def verify_entropy(self, code: str) -> EntropyAnalysis:
        """Shannon entropy of `code` relative to the alphabet maximum. Diagnostic only."""
        total = len(code)
        entropy = 0.0
        for freq in Counter(code).values():
            p = freq / total
            entropy -= p * math.log2(p)

        max_entropy = math.log2(len(self.alphabet))
        ratio = entropy / max_entropy
        return EntropyAnalysis(
            shannon_entropy=entropy,
            max_possible_entropy=max_entropy,
            entropy_ratio=ratio,
            is_high_entropy=ratio > self.high_entropy_ratio,
        )

    def collision_probability(self, batch_size: int) -> float:
        """Birthday approximation: 1 - e^(-n^2 / 2K)."""
        return -math.expm1(-(batch_size**2) / (2 * self.keyspace))

    def format_code(self, code: str) -> str:
        if len(code) != self.length:
            raise MalformedCodeError("invalid code length for formatting")
        return f"{code[:4]}-{code[4:8]}-{code[8:]}"

    def normalize(self, raw: Optional[str]) -> str:
        """Normalize user input and check its length."""
        code = normalize_code(raw or "")
        if len(code) != self.length:
            raise MalformedCodeError("invalid code format")
        return code
