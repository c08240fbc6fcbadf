import concurrent.futures
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from remote_bridge.config import REVIEW_TIMEOUT
from remote_bridge.utils import log_error


@dataclass
class ReviewDecision:
    accepted: bool
    # None keeps the proposed content
    final_content: Optional[str] = None


ReviewOutcome = Union[ReviewDecision, "concurrent.futures.Future[ReviewDecision]"]

# (tool_name, tool_input, old_content, new_content) -> decision or future decision
ReviewGate = Callable[[str, Dict[str, Any], str, str], ReviewOutcome]

# (remote_path, old_content, new_content)
UpdateNotifier = Callable[[str, str, str], None]


def await_decision(outcome: ReviewOutcome, timeout: Optional[float] = REVIEW_TIMEOUT) -> ReviewDecision:
    """Block until a reviewer decides. A decision that does not arrive within
    ``timeout`` seconds counts as a rejection."""
    if isinstance(outcome, ReviewDecision):
        return outcome
    try:
        decision = outcome.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        outcome.cancel()
        log_error(f"review timed out after {timeout}s; treating as rejected")
        return ReviewDecision(accepted=False)
    except concurrent.futures.CancelledError:
        return ReviewDecision(accepted=False)
    if isinstance(decision, dict):
        decision = ReviewDecision(
            accepted=bool(decision.get("accepted", False)),
            final_content=decision.get("finalContent", decision.get("final_content")),
        )
    return decision
