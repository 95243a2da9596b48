import secrets

QUOTES = [
    "The only true wisdom is in knowing you know nothing. – Socrates",
    "The journey of a thousand miles begins with one step. – Lao Tzu",
    "In the middle of difficulty lies opportunity. – Albert Einstein",
    "Life is what happens when you're busy making other plans. – John Lennon",
    "The only impossible journey is the one you never begin. – Tony Robbins",
    "Do not dwell in the past, do not dream of the future, "
    "concentrate the mind on the present moment. – Buddha",
    "The greatest glory in living lies not in never falling, "
    "but in rising every time we fall. – Nelson Mandela",
    "You must be the change you wish to see in the world. – Mahatma Gandhi",
    "Success is not final, failure is not fatal: "
    "it is the courage to continue that counts. – Winston Churchill",
    "It does not matter how slowly you go as long as you do not stop. – Confucius",
]


class ResourceUnavailableError(RuntimeError):
    pass


def random_quote(pool: list[str] | None = None) -> str:
    """Pick a quote using the OS CSPRNG."""
    pool = QUOTES if pool is None else pool
    if not pool:
        raise ResourceUnavailableError("quote pool is empty")
    return secrets.choice(pool)
