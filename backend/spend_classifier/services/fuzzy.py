"""Normalized edit-distance similarity."""

DEFAULT_THRESHOLD = 0.8


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with unit insert, delete and substitute costs."""
    rows, cols = len(a) + 1, len(b) + 1
    matrix = [[0] * cols for _ in range(rows)]
    for i in range(rows):
        matrix[i][0] = i
    for j in range(cols):
        matrix[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            matrix[i][j] = min(
                matrix[i - 1][j] + 1,  # deletion
                matrix[i][j - 1] + 1,  # insertion
                matrix[i - 1][j - 1] + cost,  # substitution
            )
    return matrix[-1][-1]


def similarity(a: str | None, b: str | None) -> float:
    """Case-insensitive similarity in [0, 1]: ``1 - distance / longer length``.

    Two empty strings are identical; one empty string matches nothing.
    """
    a = (a or "").lower()
    b = (b or "").lower()
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return 1.0 - levenshtein_distance(a, b) / max(len(a), len(b))


def is_match(a: str | None, b: str | None, threshold: float = DEFAULT_THRESHOLD) -> bool:
    return similarity(a, b) >= threshold
