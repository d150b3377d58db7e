import unittest
from unittest.mock import MagicMock

from fleet.errors import ConfigError, InvalidStrategy
from fleet.models import PriceQuote, PurchasingStrategy
from fleet.strategy import HANDLERS, STRATEGY_TAG_KEY, apply_strategy


def base_request():
    return {
        "ImageId": "ami-1",
        "InstanceType": "c5.large",
        "TagSpecifications": [
            {"ResourceType": "instance", "Tags": [{"Key": "team", "Value": "ci"}]},
            {"ResourceType": "volume", "Tags": [{"Key": "team", "Value": "ci"}]},
        ],
    }


class TestApplyStrategy(unittest.TestCase):
    def setUp(self):
        self.advisor = MagicMock()
        self.on_demand = 0.10
        self.spot = 0.05
        self.advisor.quote.side_effect = lambda t: PriceQuote(t, self.on_demand, self.spot)

    def strategy_tags(self, request):
        return [
            [t["Value"] for t in spec["Tags"] if t["Key"] == STRATEGY_TAG_KEY]
            for spec in request["TagSpecifications"]
        ]

    def test_best_effort_uses_spot_when_cheaper(self):
        request = apply_strategy(base_request(), PurchasingStrategy.BEST_EFFORT, self.advisor)
        market = request["InstanceMarketOptions"]
        self.assertEqual(market["MarketType"], "spot")
        self.assertAlmostEqual(float(market["SpotOptions"]["MaxPrice"]), 0.10)
        self.assertEqual(market["SpotOptions"]["InstanceInterruptionBehavior"], "terminate")
        self.assertEqual(self.strategy_tags(request), [["besteffort"], ["besteffort"]])

    def test_best_effort_stays_on_demand_when_spot_dearer(self):
        self.spot = 0.12
        request = apply_strategy(base_request(), PurchasingStrategy.BEST_EFFORT, self.advisor)
        self.assertNotIn("InstanceMarketOptions", request)
        self.assertEqual(request["InstanceType"], "c5.large")

    def test_best_effort_without_on_demand_price_stays_on_demand(self):
        self.on_demand = 0.0
        request = apply_strategy(base_request(), PurchasingStrategy.BEST_EFFORT, self.advisor)
        self.assertNotIn("InstanceMarketOptions", request)

    def test_spot_only_bids_current_spot_price(self):
        request = apply_strategy(base_request(), PurchasingStrategy.SPOT_ONLY, self.advisor)
        options = request["InstanceMarketOptions"]["SpotOptions"]
        self.assertAlmostEqual(float(options["MaxPrice"]), 0.05)
        self.assertEqual(options["SpotInstanceType"], "one-time")
        self.assertEqual(self.strategy_tags(request), [["spotonly"], ["spotonly"]])

    def test_spot_only_without_price_omits_bid(self):
        self.spot = 0.0
        request = apply_strategy(base_request(), PurchasingStrategy.SPOT_ONLY, self.advisor)
        self.assertEqual(request["InstanceMarketOptions"]["MarketType"], "spot")
        self.assertNotIn("MaxPrice", request["InstanceMarketOptions"]["SpotOptions"])

    def test_max_performance_upgrades_and_bids_original_on_demand(self):
        self.advisor.best_size_within_on_demand_budget.return_value = "c5.2xlarge"
        request = apply_strategy(base_request(), PurchasingStrategy.MAX_PERFORMANCE, self.advisor)
        self.assertEqual(request["InstanceType"], "c5.2xlarge")
        self.assertAlmostEqual(float(request["InstanceMarketOptions"]["SpotOptions"]["MaxPrice"]), 0.10)
        self.advisor.quote.assert_called_once_with("c5.large")
        self.advisor.best_size_within_on_demand_budget.assert_called_once_with("c5.large")

    def test_prices_come_from_a_single_quote(self):
        apply_strategy(base_request(), PurchasingStrategy.BEST_EFFORT, self.advisor)
        self.advisor.quote.assert_called_once_with("c5.large")
        self.advisor.spot_price.assert_not_called()
        self.advisor.on_demand_price.assert_not_called()

    def test_none_is_plain_on_demand(self):
        request = base_request()
        request["InstanceMarketOptions"] = {"MarketType": "spot"}
        request = apply_strategy(request, PurchasingStrategy.NONE, self.advisor)
        self.assertNotIn("InstanceMarketOptions", request)
        self.assertEqual(request["InstanceInitiatedShutdownBehavior"], "terminate")
        self.advisor.quote.assert_not_called()
        self.assertEqual(self.strategy_tags(request), [["none"], ["none"]])

    def test_request_without_tag_specifications_gets_one(self):
        request = {"InstanceType": "c5.large"}
        apply_strategy(request, PurchasingStrategy.NONE, self.advisor)
        self.assertEqual(request["TagSpecifications"][0]["ResourceType"], "instance")

    def test_unknown_strategy_rejected(self):
        with self.assertRaises(InvalidStrategy):
            apply_strategy(base_request(), "cheapest", self.advisor)

    def test_every_strategy_has_a_handler(self):
        self.assertEqual(set(HANDLERS), set(PurchasingStrategy))


class TestPurchasingStrategyParse(unittest.TestCase):
    def test_case_insensitive(self):
        self.assertEqual(PurchasingStrategy.parse("BestEffort"), PurchasingStrategy.BEST_EFFORT)
        self.assertEqual(PurchasingStrategy.parse(" SPOTONLY "), PurchasingStrategy.SPOT_ONLY)

    def test_empty_means_none(self):
        self.assertEqual(PurchasingStrategy.parse(""), PurchasingStrategy.NONE)
        self.assertEqual(PurchasingStrategy.parse(None), PurchasingStrategy.NONE)

    def test_invalid_is_config_error(self):
        with self.assertRaises(ConfigError):
            PurchasingStrategy.parse("cheap")


if __name__ == '__main__':
    unittest.main()
