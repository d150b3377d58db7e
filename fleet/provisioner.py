# fleet/provisioner.py
import base64
import copy
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from botocore.exceptions import BotoCoreError, ClientError

from fleet.errors import ProvisioningError
from fleet.models import InstanceLease, LeaseState, PurchasingStrategy
from fleet.strategy import apply_strategy
from fleet.utils import chunked, error_code, is_capacity_error

log = logging.getLogger("fleet.provisioner")

RUNNER_VERSION = "2.313.0"
LEASE_TAG_KEY = "gh-runner-lease"

BATCH_SIZE = 50
FLEET_CAP = 500
SUCCESS_THRESHOLD = 0.65
MAX_TOTAL_FAILURES = 25
MAX_SUCCESSIVE_FAILURES = 5
ATTEMPT_ROUNDS = 3
BACKOFF_SECONDS = 5

WAIT_CHUNK_SIZE = 50
WAIT_ATTEMPTS = 3
WAIT_RETRY_DELAY = 15


def build_user_data(
    repo_url: str,
    registration_token: str,
    run_label: str,
    runner_home_dir: str | None = None,
    pre_runner_script: str | None = None,
) -> str:
    """
    Bootstrap script run as root on first boot.

    Every instance of a batch gets the same script, so the instance's own lease label
    is read back from its `gh-runner-lease` tag through the metadata service.
    """
    lines = ["#!/bin/bash"]
    if runner_home_dir:
        # runner software is expected to be baked into the image
        lines.append(f'cd "{runner_home_dir}"')
    else:
        lines.append("mkdir actions-runner && cd actions-runner")

    lines += [
        "cat > pre-runner-script.sh <<'PRE_RUNNER_SCRIPT'",
        pre_runner_script or "",
        "PRE_RUNNER_SCRIPT",
        "source pre-runner-script.sh",
        'IMDS_TOKEN=$(curl -s -X PUT "http://169.254.169.254/latest/api/token" '
        '-H "X-aws-ec2-metadata-token-ttl-seconds: 21600")',
        f'until LEASE_LABEL=$(curl -sf -H "X-aws-ec2-metadata-token: $IMDS_TOKEN" '
        f'"http://169.254.169.254/latest/meta-data/tags/instance/{LEASE_TAG_KEY}"); do sleep 2; done',
    ]

    if not runner_home_dir:
        lines += [
            'case $(uname -m) in aarch64) ARCH="arm64" ;; amd64|x86_64) ARCH="x64" ;; esac && export RUNNER_ARCH=${ARCH}',
            f"curl -O -L https://github.com/actions/runner/releases/download/v{RUNNER_VERSION}/"
            f"actions-runner-linux-${{RUNNER_ARCH}}-{RUNNER_VERSION}.tar.gz",
            f"tar xzf ./actions-runner-linux-${{RUNNER_ARCH}}-{RUNNER_VERSION}.tar.gz",
        ]

    lines += [
        "export RUNNER_ALLOW_RUNASROOT=1",
        f"./config.sh --unattended --url {repo_url} --token {registration_token} "
        f'--labels "{run_label},$LEASE_LABEL"',
        "./run.sh",
    ]
    return "\n".join(lines)


class FleetProvisioner:
    """
    Acquires instances in bounded batches, one lease label per instance.

    `launch_template` is the base run_instances request (image, type, network, tags);
    it is copied for every attempt so strategy rewrites never leak between batches.
    """

    def __init__(
        self,
        ec2,
        advisor,
        launch_template: dict,
        strategy: PurchasingStrategy = PurchasingStrategy.NONE,
        batch_size: int = BATCH_SIZE,
        fleet_cap: int = FLEET_CAP,
        success_threshold: float = SUCCESS_THRESHOLD,
        max_total_failures: int = MAX_TOTAL_FAILURES,
        max_successive_failures: int = MAX_SUCCESSIVE_FAILURES,
        attempt_rounds: int = ATTEMPT_ROUNDS,
        backoff_seconds: float = BACKOFF_SECONDS,
        sleep=time.sleep,
    ):
        self.ec2 = ec2
        self.advisor = advisor
        self.launch_template = launch_template
        self.strategy = strategy
        self.batch_size = batch_size
        self.fleet_cap = fleet_cap
        self.success_threshold = success_threshold
        self.max_total_failures = max_total_failures
        self.max_successive_failures = max_successive_failures
        self.attempt_rounds = attempt_rounds
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def _build_request(self, count: int, user_data: str, strategy: PurchasingStrategy) -> dict:
        request = copy.deepcopy(self.launch_template)
        request.update(
            MinCount=1,
            MaxCount=count,
            UserData=base64.b64encode(user_data.encode()).decode(),
        )
        request.setdefault("MetadataOptions", {})["InstanceMetadataTags"] = "enabled"
        return apply_strategy(request, strategy, self.advisor)

    def _tag_leases(self, leases):
        for lease in leases:
            try:
                self.ec2.create_tags(
                    Resources=[lease.instance_id],
                    Tags=[{"Key": LEASE_TAG_KEY, "Value": lease.label}],
                )
            except (ClientError, BotoCoreError) as e:
                # the instance can never register; reconciliation will discard it
                log.warning("Failed to tag %s with label %s: %s", lease.instance_id, lease.label, e)

    def provision(self, ctx, labels, user_data: str) -> list[InstanceLease]:
        """
        Request one instance per label, stopping once the success threshold is met.

        Returns leases for the instances actually created, in label order. This may be
        fewer than requested: hitting the total-failure cap returns the partial fleet.
        Raises ProvisioningError once every attempt round has been used up.
        """
        target = min(len(labels), self.fleet_cap)
        if target == 0:
            return []

        leases = []
        errors = []
        successive_failures = 0
        total_failures = 0
        rounds_used = 0
        fallback_next = False
        attempt = 0

        log.info("Starting %s instances (strategy=%s)", target, self.strategy.value)
        while len(leases) / target < self.success_threshold and total_failures < self.max_total_failures:
            count = min(target - len(leases), self.batch_size)
            strategy = PurchasingStrategy.NONE if fallback_next else self.strategy
            fallback_next = False
            attempt += 1

            log.info(
                "Attempt %s: requesting %s instances (%s/%s created, strategy=%s)",
                attempt, count, len(leases), target, strategy.value,
            )
            try:
                request = self._build_request(count, user_data, strategy)
                resp = self.ec2.run_instances(**request)
            except (ClientError, BotoCoreError) as e:
                errors.append(e)
                successive_failures += 1
                total_failures += 1
                log.warning("Start instances error (%s): %s", error_code(e) or type(e).__name__, e)

                if (
                    self.strategy == PurchasingStrategy.BEST_EFFORT
                    and is_capacity_error(e)
                    and total_failures % 2 == 1
                ):
                    log.info("Spot capacity exhausted; next attempt falls back to on-demand")
                    fallback_next = True

                if successive_failures >= self.max_successive_failures:
                    if rounds_used >= self.attempt_rounds:
                        raise ProvisioningError(
                            f"Failed to start instances after {total_failures} attempts", errors
                        )
                    rounds_used += 1
                    log.warning(
                        "%s successive failures; backing off %ss (round %s/%s)",
                        successive_failures, self.backoff_seconds, rounds_used, self.attempt_rounds,
                    )
                    self.sleep(self.backoff_seconds)
                    successive_failures = 0
                continue

            instance_ids = [inst["InstanceId"] for inst in resp.get("Instances", [])][:count]
            batch_labels = labels[len(leases):len(leases) + len(instance_ids)]
            batch = [InstanceLease(label, iid) for label, iid in zip(batch_labels, instance_ids)]
            for lease in batch:
                ctx.track(lease)
            self._tag_leases(batch)
            leases.extend(batch)
            successive_failures = 0
            log.info("%s instances started (%s/%s)", len(batch), len(leases), target)

        if len(leases) / target < self.success_threshold:
            log.warning(
                "Giving up after %s failed attempts; accepting partial fleet of %s/%s instances",
                total_failures, len(leases), target,
            )
        return leases

    def _wait_one(self, instance_id: str):
        self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])

    def wait_until_running(
        self,
        leases,
        chunk_size: int = WAIT_CHUNK_SIZE,
        attempts: int = WAIT_ATTEMPTS,
        retry_delay: float = WAIT_RETRY_DELAY,
    ):
        """
        Block until every requested lease is running, at most chunk_size waits at a time.
        Leases still not running after the last attempt are left as they are.
        """
        pending = [l for l in leases if l.state == LeaseState.REQUESTED]
        for attempt in range(1, attempts + 1):
            failed = []
            for chunk in chunked(pending, chunk_size):
                with ThreadPoolExecutor(max_workers=len(chunk)) as pool:
                    futures = {pool.submit(self._wait_one, l.instance_id): l for l in chunk}
                    for future in as_completed(futures):
                        lease = futures[future]
                        try:
                            future.result()
                        except (ClientError, BotoCoreError) as e:
                            log.error("Instance %s initialization error: %s", lease.instance_id, e)
                            failed.append(lease)
                        else:
                            lease.state = LeaseState.RUNNING
                            log.info("Instance %s is up and running", lease.instance_id)

            if not failed:
                return leases
            pending = failed
            if attempt < attempts:
                log.warning(
                    "%s instances not running yet; retrying wait in %ss (%s/%s)",
                    len(failed), retry_delay, attempt, attempts,
                )
                self.sleep(retry_delay)

        log.warning("Gave up waiting for %s instances: %s", len(pending), [l.instance_id for l in pending])
        return leases
