# fleet/strategy.py
import logging

from fleet.errors import InvalidStrategy
from fleet.models import PurchasingStrategy

log = logging.getLogger("fleet.strategy")

STRATEGY_TAG_KEY = "spot-strategy"


def _spot_market(max_price: float | None):
    options = {
        "InstanceInterruptionBehavior": "terminate",
        "SpotInstanceType": "one-time",
    }
    # Without MaxPrice the provider caps the bid at the on-demand rate.
    if max_price:
        options["MaxPrice"] = f"{max_price}"
    return {"MarketType": "spot", "SpotOptions": options}


def _spot_only(request, advisor, quote):
    request["InstanceMarketOptions"] = _spot_market(quote.spot_usd)


def _best_effort(request, advisor, quote):
    if quote.on_demand_usd and quote.spot_usd < quote.on_demand_usd:
        request["InstanceMarketOptions"] = _spot_market(quote.on_demand_usd)
    else:
        log.info(
            "Spot price $%s is not below on-demand $%s for %s; using on-demand",
            quote.spot_usd, quote.on_demand_usd, request["InstanceType"],
        )


def _max_performance(request, advisor, quote):
    request["InstanceType"] = advisor.best_size_within_on_demand_budget(request["InstanceType"])
    request["InstanceMarketOptions"] = _spot_market(quote.on_demand_usd)


def _on_demand(request, advisor, quote):
    request.pop("InstanceMarketOptions", None)


HANDLERS = {
    PurchasingStrategy.SPOT_ONLY: _spot_only,
    PurchasingStrategy.BEST_EFFORT: _best_effort,
    PurchasingStrategy.MAX_PERFORMANCE: _max_performance,
    PurchasingStrategy.NONE: _on_demand,
}

_unhandled = set(PurchasingStrategy) - set(HANDLERS)
if _unhandled:
    raise ImportError(f"no purchasing handler for {sorted(s.value for s in _unhandled)}")


def tag_request(request, tags):
    specs = request.setdefault("TagSpecifications", [])
    if not specs:
        specs.append({"ResourceType": "instance", "Tags": []})
    for spec in specs:
        spec["Tags"] = list(spec.get("Tags") or []) + list(tags)
    return request


def apply_strategy(request: dict, strategy: PurchasingStrategy, advisor) -> dict:
    """
    Rewrite a run_instances request in place for the given purchasing strategy.

    One quote is taken for the type requested on entry, before any upgrade, so
    max-performance bids against the original type's on-demand rate.
    """
    if not isinstance(strategy, PurchasingStrategy):
        strategy = PurchasingStrategy.parse(strategy)
    handler = HANDLERS.get(strategy)
    if handler is None:
        raise InvalidStrategy(f"Invalid value for purchasing strategy: {strategy!r}")

    request["InstanceInitiatedShutdownBehavior"] = "terminate"
    quote = None
    if strategy != PurchasingStrategy.NONE:
        quote = advisor.quote(request["InstanceType"])

    handler(request, advisor, quote)
    tag_request(request, [{"Key": STRATEGY_TAG_KEY, "Value": strategy.value}])
    log.info(
        "Applied %s strategy: type=%s market=%s",
        strategy.value, request["InstanceType"], request.get("InstanceMarketOptions", {}).get("MarketType", "on-demand"),
    )
    return request
