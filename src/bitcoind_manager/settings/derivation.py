"""Cross-field consistency rules applied after validation and before persistence.

Every rule reads the record as it was handed in, never another rule's
output, so a single pass in a fixed order is enough and re-applying the pass
to its own result changes nothing.
"""

from collections.abc import Callable, Mapping
from typing import Any

Rule = Callable[[Mapping[str, Any], dict[str, Any]], None]


def _block_filters_need_index(original: Mapping[str, Any], out: dict[str, Any]) -> None:
    # Serving compact block filters requires the filter index
    if original.get("peerblockfilters"):
        out["blockfilterindex"] = True


def _pruning_disables_txindex(original: Mapping[str, Any], out: dict[str, Any]) -> None:
    prune = original.get("prune")
    if isinstance(prune, (int, float)) and not isinstance(prune, bool) and prune > 0:
        out["txindex"] = False


def _proxy_needs_clearnet_and_tor(original: Mapping[str, Any], out: dict[str, Any]) -> None:
    onlynet = original.get("onlynet") or []
    if original.get("proxy") and ("clearnet" not in onlynet or "tor" not in onlynet):
        out["proxy"] = False


DERIVATION_RULES: tuple[Rule, ...] = (
    _block_filters_need_index,
    _pruning_disables_txindex,
    _proxy_needs_clearnet_and_tor,
)


def apply_derived_settings(
    settings: Mapping[str, Any],
    rules: tuple[Rule, ...] = DERIVATION_RULES,
) -> dict[str, Any]:
    """Return a copy of ``settings`` with every derivation rule applied once."""
    original = dict(settings)
    derived = dict(settings)
    for rule in rules:
        rule(original, derived)
    return derived
