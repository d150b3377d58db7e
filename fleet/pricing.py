# fleet/pricing.py
import logging
from datetime import datetime, timezone

from fleet.models import PriceQuote
from fleet.utils import find_on_demand_price

log = logging.getLogger("fleet.pricing")

PRODUCT_DESCRIPTION = "Linux/UNIX"


class PricingAdvisor:
    """
    Fresh spot and on-demand prices for an instance family, plus the size ladder
    used by the max-performance strategy.

    Nothing here is cached: every call goes back to the provider, since spot prices
    move between decision points. A price of 0 means "unknown", never "free".
    """

    def __init__(self, ec2, pricing, region: str, subnet_id: str | None = None):
        self.ec2 = ec2
        self.pricing = pricing
        self.region = region
        self.subnet_id = subnet_id

    def subnet_availability_zone(self) -> str | None:
        if not self.subnet_id:
            return None
        try:
            subnets = self.ec2.describe_subnets(SubnetIds=[self.subnet_id])["Subnets"]
        except Exception:
            log.error("Failed to look up availability zone of subnet %s", self.subnet_id)
            raise
        return subnets[0]["AvailabilityZone"] if subnets else None

    def spot_price(self, instance_type: str, availability_zone: str | None = None) -> float:
        params = {
            "InstanceTypes": [instance_type],
            "ProductDescriptions": [PRODUCT_DESCRIPTION],
            "StartTime": datetime.now(timezone.utc),
        }
        zone = availability_zone or self.subnet_availability_zone()
        if zone:
            params["AvailabilityZone"] = zone

        try:
            history = self.ec2.describe_spot_price_history(**params).get("SpotPriceHistory") or []
        except Exception:
            log.error("Failed to look up spot price for %s", instance_type)
            raise

        if not history:
            log.info("No spot price history for %s in %s", instance_type, zone or self.region)
            return 0.0
        return float(history[0]["SpotPrice"])

    def on_demand_price(self, instance_type: str) -> float:
        params = {
            "ServiceCode": "AmazonEC2",
            "FormatVersion": "aws_v1",
            "MaxResults": 100,
            "Filters": [
                {"Type": "TERM_MATCH", "Field": "ServiceCode", "Value": "AmazonEC2"},
                {"Type": "TERM_MATCH", "Field": "regionCode", "Value": self.region},
                {"Type": "TERM_MATCH", "Field": "marketoption", "Value": "OnDemand"},
                {"Type": "TERM_MATCH", "Field": "instanceType", "Value": instance_type},
                {"Type": "TERM_MATCH", "Field": "operatingSystem", "Value": "Linux"},
                {"Type": "TERM_MATCH", "Field": "licenseModel", "Value": "No License required"},
                {"Type": "TERM_MATCH", "Field": "preInstalledSw", "Value": "NA"},
            ],
        }

        while True:
            resp = self.pricing.get_products(**params)
            price = find_on_demand_price(instance_type, resp.get("PriceList"))
            if price:
                return price
            if not resp.get("NextToken"):
                break
            params["NextToken"] = resp["NextToken"]

        log.info("No on-demand price entry for %s in %s", instance_type, self.region)
        return 0.0

    def quote(self, instance_type: str) -> PriceQuote:
        return PriceQuote(
            instance_type=instance_type,
            on_demand_usd=self.on_demand_price(instance_type),
            spot_usd=self.spot_price(instance_type),
        )

    def family_sizes(self, family: str) -> list[tuple[str, int]]:
        """
        (instance_type, default_cores) for every non bare-metal size in a family,
        ordered by core count ascending.
        """
        params = {
            "Filters": [
                {"Name": "instance-type", "Values": [f"{family}.*"]},
                {"Name": "bare-metal", "Values": ["false"]},
            ],
            "MaxResults": 100,
        }

        sizes = []
        while True:
            resp = self.ec2.describe_instance_types(**params)
            for item in resp.get("InstanceTypes", []):
                name = item.get("InstanceType")
                cores = (item.get("VCpuInfo") or {}).get("DefaultCores")
                if name and cores and "metal" not in name:
                    sizes.append((name, cores))
            if not resp.get("NextToken"):
                break
            params["NextToken"] = resp["NextToken"]

        return sorted(sizes, key=lambda s: s[1])

    def next_larger_size(self, instance_type: str) -> str:
        family = instance_type.lower().split(".")[0]
        names = [name for name, _ in self.family_sizes(family)]
        if instance_type not in names:
            log.warning("%s not found among %s sizes; keeping it", instance_type, family)
            return instance_type
        index = names.index(instance_type)
        return names[index + 1] if index + 1 < len(names) else instance_type

    def best_size_within_on_demand_budget(self, base_type: str) -> str:
        """
        Greedy climb up the size ladder while the next size's spot price stays under
        the on-demand price of base_type.

        The budget is fixed at the base type's on-demand price for the whole climb and
        the climb stops at the first step that does not fit, so one noisy spot quote can
        end it early. A missing spot price (0) also ends the climb.
        """
        budget = self.on_demand_price(base_type)
        best = base_type
        while True:
            candidate = self.next_larger_size(best)
            if candidate == best:
                break
            spot = self.spot_price(candidate)
            if not (0 < spot < budget):
                break
            best = candidate

        log.info("Best spot size within on-demand budget $%s of %s: %s", budget, base_type, best)
        return best
