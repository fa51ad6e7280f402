# Token Guard - Host Credential Accessor Patch
# Hides the host's own token while the bot socket is open

"""
Token Guard Module

Responsibilities:
- Wrap a host token accessor so it returns None while the bot socket is open
- Install the wrapper on an object attribute (setattr) and keep the original
- Restore every patched accessor on unload
"""

import functools
from typing import Any, Callable, List, Tuple

from ..utils.logger import setup_logger

class TokenAccessorGuard:
    """
    Instead-style patch for host token accessors

    Args:
        is_bot_socket_open: Predicate consulted on every accessor call
    """

    def __init__(self, is_bot_socket_open: Callable[[], bool]):
        self.is_bot_socket_open = is_bot_socket_open
        self.logger = setup_logger("TokenGuard", "INFO")
        self._patched: List[Tuple[Any, str, Callable]] = []

    def wrap(self, accessor: Callable) -> Callable:
        """Return a wrapper returning None while the bot socket is open"""
        @functools.wraps(accessor)
        def guarded(*args, **kwargs):
            if self.is_bot_socket_open():
                return None
            return accessor(*args, **kwargs)

        guarded.__wrapped_original__ = accessor
        return guarded

    def patch(self, target: Any, attribute: str = "getToken") -> Callable[[], None]:
        """
        Replace target.<attribute> with the guarded version

        Args:
            target: Object (module, class or instance) exposing the accessor
            attribute: Accessor attribute name

        Returns:
            Callable that restores the original accessor

        Raises:
            AttributeError: target has no such callable attribute
        """
        original = getattr(target, attribute)
        if not callable(original):
            raise AttributeError(f"{attribute} is not callable")

        setattr(target, attribute, self.wrap(original))
        entry = (target, attribute, original)
        self._patched.append(entry)
        self.logger.info(f"Patched {type(target).__name__}.{attribute}")

        def unpatch():
            if entry in self._patched:
                self._patched.remove(entry)
                setattr(target, attribute, original)
                self.logger.debug(f"Restored {type(target).__name__}.{attribute}")

        return unpatch

    def unpatch_all(self):
        """Restore every patched accessor (newest first)"""
        while self._patched:
            target, attribute, original = self._patched.pop()
            setattr(target, attribute, original)
        self.logger.debug("All token accessors restored")

    @property
    def patched_count(self) -> int:
        return len(self._patched)
