"""
Notice Templates - HTML bodies of outgoing customer notices

Bodies are plain HTML fragments appended to a provider thread.
"""
from html import escape
from typing import Optional

from ..domain.enums import FeedbackRating


RESOLUTION_SUBJECT = "Ticket Resolved - Feedback Request"

# Rating scale shown to the customer, best first
_RATING_LABELS = {
    FeedbackRating.GREAT: "\U0001F600 Great",
    FeedbackRating.GOOD: "\U0001F642 Good",
    FeedbackRating.AVERAGE: "\U0001F610 Average",
    FeedbackRating.POOR: "\U0001F641 Poor",
    FeedbackRating.BAD: "\U0001F61E Bad",
}


def get_rating_scale() -> str:
    return " | ".join(_RATING_LABELS[rating] for rating in FeedbackRating)


def get_resolution_notice(
    ticket_number: Optional[int] = None,
    selected: Optional[FeedbackRating] = None
) -> str:
    """
    Body of the "ticket resolved" notice with the feedback scale.

    ``selected`` echoes a rating the agent already recorded for the customer.
    """
    reference = f" #{ticket_number}" if ticket_number is not None else ""
    parts = [
        f"<p>Your ticket{escape(reference)} has been resolved. Thank you for contacting us!</p>",
        "<p>How was your experience? Please let us know:</p>",
        f"<p>{get_rating_scale()}</p>",
    ]
    if selected is not None:
        parts.append(f"<p>You selected: {escape(selected.value)}</p>")
    return "".join(parts)
