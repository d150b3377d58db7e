# fleet/teardown.py
import logging
import time

from botocore.exceptions import BotoCoreError, ClientError

from fleet.models import LeaseState
from registry.github_registry import RegistryError

log = logging.getLogger("fleet.teardown")

MAX_RETRIES = 5
ATTEMPT_ROUNDS = 3
RETRY_DELAY = 15


class Teardown:
    def __init__(
        self,
        ec2,
        registry,
        max_retries: int = MAX_RETRIES,
        attempt_rounds: int = ATTEMPT_ROUNDS,
        retry_delay: float = RETRY_DELAY,
        sleep=time.sleep,
    ):
        self.ec2 = ec2
        self.registry = registry
        self.max_retries = max_retries
        self.attempt_rounds = attempt_rounds
        self.retry_delay = retry_delay
        self.sleep = sleep

    def _each_instance(self, verb: str, call, instance_ids):
        """
        Apply `call` to one instance id at a time. After max_retries failures in a row,
        sleep and re-queue every id that has failed so far; once the attempt rounds are
        used up, raise the last error.
        """
        queue = list(instance_ids)
        errors = {}
        done = []
        successive = 0
        rounds_used = 0

        log.info("%s %s instances", verb.capitalize(), len(queue))
        while queue:
            instance_id = queue.pop()
            try:
                call(InstanceIds=[instance_id])
            except (ClientError, BotoCoreError) as e:
                log.warning("Failed to %s %s: %s", verb, instance_id, e)
                errors[instance_id] = e
                successive += 1
            else:
                log.info("Instance %s: %s requested", instance_id, verb)
                errors.pop(instance_id, None)
                done.append(instance_id)
                successive = 0

            if successive >= self.max_retries or (not queue and errors):
                if rounds_used >= self.attempt_rounds:
                    raise next(reversed(errors.values()))
                rounds_used += 1
                log.info("Retrying %s failed instances in %ss", len(errors), self.retry_delay)
                self.sleep(self.retry_delay)
                queue = [i for i in queue if i not in errors] + list(errors)
                successive = 0
        return done

    def stop_by_instance_ids(self, instance_ids):
        return self._each_instance("stop", self.ec2.stop_instances, instance_ids)

    def terminate_by_instance_ids(self, instance_ids):
        return self._each_instance("terminate", self.ec2.terminate_instances, instance_ids)

    def terminate_by_tag_filter(self, filters) -> list[str]:
        """
        Terminate every running instance matching the tag filters in one call.
        Matching nothing is a no-op.
        """
        params = {
            "Filters": list(filters) + [{"Name": "instance-state-name", "Values": ["running"]}],
        }
        instance_ids = []
        while True:
            resp = self.ec2.describe_instances(**params)
            for reservation in resp.get("Reservations", []):
                instance_ids.extend(inst["InstanceId"] for inst in reservation.get("Instances", []))
            if not resp.get("NextToken"):
                break
            params["NextToken"] = resp["NextToken"]

        if not instance_ids:
            log.info("No running instances match %s", filters)
            return []

        try:
            self.ec2.terminate_instances(InstanceIds=instance_ids)
        except (ClientError, BotoCoreError):
            log.error("Termination error with instances: %s", instance_ids)
            raise
        log.info("Instances %s are terminated", instance_ids)
        return instance_ids

    def remove_registrations(self, labels) -> list[int]:
        """
        Delete every runner registration carrying any of the labels. All deletions are
        attempted; the first failure is raised afterwards.
        """
        wanted = set(labels)
        runners = [r for r in self.registry.list_runners() if r.labels & wanted]
        if not runners:
            log.info("No runner registrations with labels %s; skipping removal", sorted(wanted))
            return []

        removed = []
        first_error = None
        for runner in runners:
            try:
                deleted = self.registry.delete_runner(runner.id)
            except RegistryError as e:
                log.error("Runner removal error for %s: %s", runner.name or runner.id, e)
                first_error = first_error or e
                continue
            if deleted:
                log.info("Runner %s is removed", runner.name or runner.id)
                removed.append(runner.id)

        if first_error:
            raise first_error
        return removed

    def discard(self, leases):
        """
        Terminate the given leases' instances and drop their registrations.
        """
        leases = list(leases)
        if not leases:
            return
        self.terminate_by_instance_ids([l.instance_id for l in leases])
        for lease in leases:
            lease.state = LeaseState.TERMINATED
        self.remove_registrations([l.label for l in leases])
