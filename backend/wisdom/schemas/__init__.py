from wisdom.schemas.challenge import Challenge
from wisdom.schemas.messages import (
    ChallengeMessage,
    ErrorMessage,
    Message,
    QuoteMessage,
    SolutionMessage,
)

__all__ = [
    "Challenge",
    "ChallengeMessage",
    "ErrorMessage",
    "Message",
    "QuoteMessage",
    "SolutionMessage",
]
