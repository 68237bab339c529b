"""
String similarity - normalized Levenshtein distance.

Used by the fraud detector to compare organization names and email
local parts against recently created worker identities.
"""


def levenshtein(a: str, b: str) -> int:
    """Return the edit distance between two strings (insert/delete/substitute)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        curr = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            curr.append(min(curr[j - 1] + 1, prev[j] + 1, prev[j - 1] + cost))
        prev = curr
    return prev[-1]


def similarity(a: str, b: str) -> float:
    """
    Case-insensitive similarity in [0, 1].

    Computed as (max_len - distance) / max_len. Two empty strings are
    considered identical.
    """
    a = a.lower()
    b = b.lower()
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein(a, b)) / max_len
