import json
import logging
import time

from botocore.exceptions import ClientError

log = logging.getLogger("fleet.utils")

CAPACITY_ERROR_CODES = {
    "InsufficientInstanceCapacity",
    "InsufficientHostCapacity",
    "MaxSpotInstanceCountExceeded",
    "InsufficientFreeAddressesInSubnet",
}


def retry(fn, retries=3, delay=2, sleep=time.sleep):
    for i in range(retries):
        try:
            return fn()
        except Exception as e:
            if i == retries - 1:
                raise
            log.warning("Retry %s/%s failed: %s", i + 1, retries, e)
            sleep(delay)


def chunked(items, size):
    items = list(items)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def error_code(error) -> str | None:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def is_capacity_error(error) -> bool:
    return error_code(error) in CAPACITY_ERROR_CODES


def find_on_demand_price(instance_type: str, price_list) -> float:
    """
    Scan a Pricing API PriceList for the hourly Linux on-demand rate of instance_type.

    Entries may be raw JSON strings (as the API returns them) or decoded dicts.
    Returns 0.0 when nothing matches.
    """
    description = f"On Demand Linux {instance_type} Instance Hour".lower()

    for entry in price_list or []:
        product = json.loads(entry) if isinstance(entry, str) else entry
        on_demand = product.get("terms", {}).get("OnDemand") or {}
        for term in on_demand.values():
            for dimension in (term.get("priceDimensions") or {}).values():
                text = (dimension.get("description") or "").lower()
                if description in text:
                    return float(dimension.get("pricePerUnit", {}).get("USD") or 0)
    return 0.0
