import math


class ProgressEstimator:
    """
    Predicts the total duration of a run.

    The first guess comes from the document length alone. Once extraction
    batches complete, the measured average time per chunk replaces it:

        total = elapsed + avg * remaining_chunks + avg * overhead_factor

    where the overhead factor stands in for the consolidation and polish
    calls, which are not measured until they happen.
    """

    def __init__(self, seconds_per_char, minimum_estimate=30):
        self.seconds_per_char = seconds_per_char
        self.minimum_estimate = minimum_estimate
        self.estimated_total = None

    def seed(self, document_length):
        self.estimated_total = max(self.minimum_estimate, math.ceil(document_length * self.seconds_per_char))
        return self.estimated_total

    def update(self, elapsed_seconds, units_completed, units_total, overhead_factor):
        if units_completed <= 0:
            return self.estimated_total

        elapsed_seconds = max(0.0, elapsed_seconds)
        avg_per_unit = elapsed_seconds / units_completed
        units_remaining = max(0, units_total - units_completed)
        estimate = elapsed_seconds + avg_per_unit * units_remaining + avg_per_unit * overhead_factor
        self.estimated_total = max(0, math.ceil(estimate))
        return self.estimated_total

    def remaining(self, elapsed_seconds):
        if self.estimated_total is None:
            return None
        return max(0, self.estimated_total - int(elapsed_seconds))


def format_time(seconds):
    """MM:SS, negative values shown as 00:00."""
    seconds = max(0, int(seconds))
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"
