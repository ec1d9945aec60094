from dataclasses import dataclass

BOUNDARY_CHARS = ".!?\n"
MAX_LOOKBACK = 5000
LOOKBACK_RATIO = 0.05


@dataclass(frozen=True)
class Chunk:
    index: int
    text: str

    @property
    def size(self):
        return len(self.text)


def lookback_window(max_size):
    return min(MAX_LOOKBACK, int(max_size * LOOKBACK_RATIO))


def find_split_point(text, start, end, lookback):
    """
    Returns the position just after the last sentence or line break in
    text[end - lookback:end], or `end` itself when there is none (hard cut).
    The result is always greater than `start`.
    """
    window_start = max(start, end - lookback)
    best = max(text.rfind(char, window_start, end) for char in BOUNDARY_CHARS)
    if best == -1:
        return end
    return best + 1


def split_text(text, max_size):
    """
    Splits text into chunks of at most `max_size` characters. Each cut is moved
    back to the nearest preceding '.', '!', '?' or newline if one lies within
    the lookback window (5% of max_size, capped at 5000 chars); otherwise the
    text is cut exactly at max_size. Chunks are stripped of surrounding
    whitespace and whitespace-only pieces are dropped.
    """
    if max_size <= 0:
        raise ValueError("max_size must be greater than 0")

    chunks = []
    lookback = lookback_window(max_size)
    cursor = 0
    text_length = len(text)

    while cursor < text_length:
        end = min(cursor + max_size, text_length)
        if end < text_length and lookback > 0:
            end = find_split_point(text, cursor, end, lookback)

        piece = text[cursor:end].strip()
        if piece:
            chunks.append(Chunk(index=len(chunks), text=piece))

        cursor = end

    return chunks
