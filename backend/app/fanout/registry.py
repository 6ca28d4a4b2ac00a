"""In-memory symbol interest bookkeeping."""

from __future__ import annotations

from collections.abc import Hashable


class SubscriptionRegistry:
    """Reference-counted map of symbol -> interested subscribers.

    A symbol is present iff at least one subscriber wants it. The boolean
    results of add/remove report the 0 -> 1 and 1 -> 0 transitions, which are
    exactly when the upstream must subscribe or unsubscribe.

    Holds no locks and does no I/O. SubscriptionRouter owns the only instance
    and serializes every mutation. Handles are not owned here: the registry
    never closes a subscriber, it only forgets it.
    """

    def __init__(self) -> None:
        self._by_symbol: dict[str, set[Hashable]] = {}
        self._by_subscriber: dict[Hashable, set[str]] = {}

    def add_interest(self, symbol: str, subscriber: Hashable) -> bool:
        """Record interest. Returns True if this is the symbol's first subscriber."""
        interested = self._by_symbol.get(symbol)
        first = interested is None
        if first:
            interested = self._by_symbol[symbol] = set()
        interested.add(subscriber)
        self._by_subscriber.setdefault(subscriber, set()).add(symbol)
        return first

    def remove_interest(self, symbol: str, subscriber: Hashable) -> bool:
        """Drop interest. Returns True if the symbol has no subscribers left.

        Removing an interest that was never recorded is a no-op returning False.
        """
        interested = self._by_symbol.get(symbol)
        if interested is None or subscriber not in interested:
            return False

        interested.discard(subscriber)
        symbols = self._by_subscriber.get(subscriber)
        if symbols is not None:
            symbols.discard(symbol)
            if not symbols:
                del self._by_subscriber[subscriber]

        if interested:
            return False
        del self._by_symbol[symbol]
        return True

    def remove_subscriber(self, subscriber: Hashable) -> set[str]:
        """Forget a subscriber entirely. Returns the symbols left with no subscribers."""
        emptied: set[str] = set()
        for symbol in list(self._by_subscriber.get(subscriber, ())):
            if self.remove_interest(symbol, subscriber):
                emptied.add(symbol)
        self._by_subscriber.pop(subscriber, None)
        return emptied

    def interested_in(self, symbol: str) -> frozenset[Hashable]:
        """Subscribers currently wanting ``symbol`` (empty if unknown)."""
        return frozenset(self._by_symbol.get(symbol, ()))

    def symbols(self) -> set[str]:
        """Snapshot of every symbol with at least one subscriber."""
        return set(self._by_symbol)

    def symbols_for(self, subscriber: Hashable) -> set[str]:
        return set(self._by_subscriber.get(subscriber, ()))

    def __len__(self) -> int:
        return len(self._by_symbol)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._by_symbol
