"""Exception types raised by chatcart collaborators.

Errors from collaborators (oracle, persistence, webhook) are caught where they are
called and turned into a degraded reply; none of them is meant to reach the client.
"""


class ChatcartError(Exception):
    """Base class for chatcart errors."""


class OracleError(ChatcartError):
    """The language-model oracle failed, timed out, or answered with unusable output."""


class PersistenceError(ChatcartError):
    """The session store could not read or write its backing file."""
