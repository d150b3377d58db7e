# fleet/launcher.py
import logging
import time

from botocore.exceptions import BotoCoreError, ClientError

from fleet.config_loader import identifying_filters
from fleet.errors import FleetError, RegistrationError
from fleet.models import LeaseState
from fleet.provisioner import build_user_data
from fleet.utils import retry
from registry.github_registry import RegistryError

log = logging.getLogger("fleet.launcher")

RETRY_BUDGET = 5
TEARDOWN_ERRORS = (ClientError, BotoCoreError, RegistryError)


class FleetLauncher:
    """
    Drives a whole run: provision, wait, reconcile, then discard stragglers and retry
    them with fresh labels until none are left or the budget runs out.
    """

    def __init__(
        self,
        cfg,
        registry,
        allocator,
        provisioner,
        reconciler,
        teardown,
        retry_budget: int = RETRY_BUDGET,
        sleep=time.sleep,
    ):
        self.cfg = cfg
        self.registry = registry
        self.allocator = allocator
        self.provisioner = provisioner
        self.reconciler = reconciler
        self.teardown = teardown
        self.retry_budget = retry_budget
        self.sleep = sleep

    def start(self, ctx) -> dict:
        """
        Returns {label: instance_id} for every registered runner. This can be fewer
        than the target when the provisioner accepted a partial fleet. On any failure
        the whole run is rolled back before the error propagates.
        """
        try:
            return self._start_and_register(ctx)
        except (FleetError, *TEARDOWN_ERRORS):
            self.rollback(ctx)
            raise

    def _start_and_register(self, ctx) -> dict:
        pending = ctx.target_count
        while True:
            ctx.registration_rounds += 1

            # ==========================================
            # STEP 1: LABELS + REGISTRATION TOKEN
            # ==========================================
            labels = self.allocator.generate(pending, exclude=ctx.issued_labels)
            ctx.issued_labels.update(labels)
            token = retry(self.registry.create_registration_token, retries=3, delay=5, sleep=self.sleep)
            user_data = build_user_data(
                self.registry.repo_url,
                token,
                ctx.run_label,
                runner_home_dir=self.cfg.get("runner_home_dir"),
                pre_runner_script=self.cfg.get("pre_runner_script"),
            )
            log.info(
                "Round %s/%s: starting %s instances for label %s",
                ctx.registration_rounds, self.retry_budget, pending, ctx.run_label,
            )

            # ==========================================
            # STEP 2: PROVISION
            # ==========================================
            leases = self.provisioner.provision(ctx, labels, user_data)
            self.provisioner.wait_until_running(leases)

            # ==========================================
            # STEP 3: RECONCILE
            # ==========================================
            result = self.reconciler.wait_for_registration(leases)
            if not result.unregistered:
                registered = len(ctx.registered())
                if not registered:
                    raise RegistrationError(f"No runners registered for label {ctx.run_label}")
                if registered < ctx.target_count:
                    log.warning(
                        "Accepting partial fleet: %s of %s runners registered",
                        registered, ctx.target_count,
                    )
                else:
                    log.info(
                        "All %s runners registered (%s platform requests)",
                        ctx.target_count, ctx.platform_requests,
                    )
                return ctx.label_instance_map()

            log.warning(
                "%s runners did not register in time: %s",
                len(result.unregistered), [l.label for l in result.unregistered],
            )
            self._discard_stragglers(result.unregistered)

            # only stragglers are retried; instances the provisioner never created stay dropped
            pending = len(result.unregistered)
            if ctx.registration_rounds >= self.retry_budget:
                raise RegistrationError(
                    f"{pending} of {ctx.target_count} runners still unregistered "
                    f"after {ctx.registration_rounds} rounds"
                )
            log.info("Retrying %s runners with fresh labels", pending)

    def _discard_stragglers(self, leases):
        try:
            self.teardown.discard(leases)
        except TEARDOWN_ERRORS as e:
            # rollback or the next stop run still covers these instances
            log.error("Failed to discard stragglers %s: %s", [l.instance_id for l in leases], e)

    def rollback(self, ctx):
        """
        Tear down everything this run provisioned. Failures are logged only, so the
        error that caused the rollback is the one the caller sees.
        """
        # stragglers already discarded are not terminated twice
        leases = ctx.live()
        log.error("Rolling back run %s: terminating %s instances", ctx.run_label, len(leases))
        if leases:
            try:
                self.teardown.terminate_by_instance_ids([l.instance_id for l in leases])
            except TEARDOWN_ERRORS as e:
                log.error("Rollback termination failed: %s", e)
            else:
                for lease in leases:
                    lease.state = LeaseState.TERMINATED

        if ctx.issued_labels:
            try:
                self.teardown.remove_registrations(ctx.issued_labels)
            except TEARDOWN_ERRORS as e:
                log.error("Rollback registration removal failed: %s", e)

    def stop(self):
        # ==========================================
        # STEP 1: TERMINATE (PROVIDER)
        # ==========================================
        terminated = self.teardown.terminate_by_tag_filter(identifying_filters(self.cfg))
        stopped = []
        if self.cfg.get("ec2_instance_ids"):
            stopped = self.teardown.stop_by_instance_ids(self.cfg["ec2_instance_ids"])

        # ==========================================
        # STEP 2: DEREGISTER (PLATFORM)
        # ==========================================
        removed = self.teardown.remove_registrations([self.cfg["label"]])
        log.info(
            "Stopped run %s: %s terminated, %s stopped, %s registrations removed",
            self.cfg["label"], len(terminated), len(stopped), len(removed),
        )
        return {"terminated": terminated, "stopped": stopped, "removed": removed}
