# fleet/reconciler.py
import logging
import time

from fleet.models import LeaseState, RegistrationResult
from registry.github_registry import RegistryError

log = logging.getLogger("fleet.reconciler")

REGISTRATION_TIMEOUT = 60
POLL_INTERVAL = 15


class RegistrationReconciler:
    """
    Matches leases against runner registrations using their labels, the only key the
    two sides share before a runner has registered.
    """

    def __init__(
        self,
        registry,
        timeout: float = REGISTRATION_TIMEOUT,
        interval: float = POLL_INTERVAL,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.registry = registry
        self.timeout = timeout
        self.interval = interval
        self.sleep = sleep
        self.clock = clock

    def registrations(self, labels) -> dict:
        """
        label -> RunnerRecord for every requested label that has a registration.
        Records carrying none of the labels are ignored.
        """
        wanted = set(labels)
        found = {}
        for record in self.registry.list_runners():
            for label in record.labels & wanted:
                found[label] = record

        missing = wanted - set(found)
        if missing:
            log.info("Labels %s not found among registered runners", sorted(missing))
        return found

    @staticmethod
    def partition(leases, found: dict) -> RegistrationResult:
        result = RegistrationResult()
        for lease in leases:
            if lease.label in found:
                result.registered.append(lease)
            else:
                result.unregistered.append(lease)
        return result

    def wait_for_registration(self, leases, timeout: float | None = None, interval: float | None = None):
        """
        Poll until every lease has registered or the timeout passes.

        Each tick rebuilds the partition from a fresh listing, so a registration that
        vanishes between polls moves back to unregistered. The result always covers
        every input lease exactly once. Registered leases become REGISTERED, the rest STALE.
        """
        leases = list(leases)
        timeout = self.timeout if timeout is None else timeout
        interval = self.interval if interval is None else interval
        if not leases:
            return RegistrationResult()

        labels = [l.label for l in leases]
        log.info("Checking every %ss whether %s runners are registered", interval, len(leases))

        deadline = self.clock() + timeout
        while True:
            self.sleep(interval)
            try:
                found = self.registrations(labels)
            except RegistryError as e:
                log.warning("Could not list runner registrations: %s", e)
                found = {}

            result = self.partition(leases, found)
            if not result.unregistered:
                log.info("All %s runners registered", len(leases))
                break
            if self.clock() >= deadline:
                log.warning(
                    "Timed out after %ss with %s/%s runners unregistered",
                    timeout, len(result.unregistered), len(leases),
                )
                break
            log.info("Still waiting for runners: %s", [l.label for l in result.unregistered])

        for lease in result.registered:
            lease.state = LeaseState.REGISTERED
        for lease in result.unregistered:
            lease.state = LeaseState.STALE
        return result
