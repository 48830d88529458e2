"""AssetPair: (asset_id, currency) key used by feeds, caches and history.

.. code-block:: python

    >>> pair = AssetPair("BTC", "USD")
    >>> str(pair)
    'btc/usd'
    >>> AssetPair.from_string("eth/eur").currency
    'eur'
"""

from __future__ import annotations

import re

_SYMBOL_RE = re.compile(r"^[a-z0-9_-]{1,20}$")


class AssetPair:
    """An asset priced in a currency.

    :ivar asset_id: Asset symbol (lowercase).
    :ivar currency: Quote currency symbol (lowercase).
    """

    __slots__ = ("asset_id", "currency")

    def __init__(self, asset_id: str, currency: str) -> None:
        """Initialize the pair, normalizing both symbols to lowercase.

        :param asset_id: Asset symbol (e.g., "btc", "eth").
        :param currency: Quote currency symbol (e.g., "usd").
        :raises ValueError: If either symbol is empty or malformed.
        """
        asset_id = asset_id.strip().lower()
        currency = currency.strip().lower()
        if not _SYMBOL_RE.match(asset_id):
            raise ValueError(f"Invalid asset_id '{asset_id}'")
        if not _SYMBOL_RE.match(currency):
            raise ValueError(f"Invalid currency '{currency}'")
        self.asset_id = asset_id
        self.currency = currency

    def __str__(self) -> str:
        return f"{self.asset_id}/{self.currency}"

    def __repr__(self) -> str:
        return f"AssetPair({self.asset_id!r}, {self.currency!r})"

    def __hash__(self) -> int:
        return hash((self.asset_id, self.currency))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AssetPair):
            return NotImplemented
        return (self.asset_id, self.currency) == (other.asset_id, other.currency)

    @classmethod
    def from_string(cls, pair_str: str) -> AssetPair:
        """Parse a pair string in format "asset/currency".

        :param pair_str: Pair string like "btc/usd".
        :returns: New AssetPair instance.
        :raises ValueError: If pair string format is invalid.
        """
        parts = pair_str.split("/")
        if len(parts) != 2:
            raise ValueError(
                f"Invalid pair format '{pair_str}'. Expected 'asset/currency' (e.g., 'btc/usd')"
            )
        return cls(parts[0], parts[1])
