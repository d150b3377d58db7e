import unittest
from unittest.mock import MagicMock

from botocore.exceptions import ClientError

from fleet.models import InstanceLease, LeaseState, RunnerRecord
from fleet.teardown import Teardown
from registry.github_registry import RegistryError


def client_error(op="StopInstances"):
    return ClientError({"Error": {"Code": "RequestLimitExceeded", "Message": "slow down"}}, op)


def runner(runner_id, *labels):
    return RunnerRecord(id=runner_id, name=f"runner-{runner_id}", labels=frozenset(labels), status="online")


class TestTeardown(unittest.TestCase):
    def setUp(self):
        self.ec2 = MagicMock()
        self.registry = MagicMock()
        self.sleep = MagicMock()
        self.teardown = Teardown(self.ec2, self.registry, sleep=self.sleep)

    def test_terminate_by_tag_filter_no_matches(self):
        self.ec2.describe_instances.return_value = {"Reservations": []}
        self.assertEqual(self.teardown.terminate_by_tag_filter([{"Name": "tag:gh-runner-label", "Values": ["x"]}]), [])
        self.ec2.terminate_instances.assert_not_called()

    def test_terminate_by_tag_filter_paginates_then_terminates_once(self):
        self.ec2.describe_instances.side_effect = [
            {"Reservations": [{"Instances": [{"InstanceId": "i-1"}, {"InstanceId": "i-2"}]}], "NextToken": "t"},
            {"Reservations": [{"Instances": [{"InstanceId": "i-3"}]}]},
        ]
        filters = [{"Name": "tag:gh-runner-label", "Values": ["run1"]}]

        terminated = self.teardown.terminate_by_tag_filter(filters)

        self.assertEqual(terminated, ["i-1", "i-2", "i-3"])
        self.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1", "i-2", "i-3"])
        first_call = self.ec2.describe_instances.call_args_list[0].kwargs
        self.assertIn({"Name": "instance-state-name", "Values": ["running"]}, first_call["Filters"])
        self.assertEqual(self.ec2.describe_instances.call_args_list[1].kwargs["NextToken"], "t")

    def test_terminate_by_tag_filter_raises_on_terminate_failure(self):
        self.ec2.describe_instances.return_value = {"Reservations": [{"Instances": [{"InstanceId": "i-1"}]}]}
        self.ec2.terminate_instances.side_effect = client_error("TerminateInstances")
        with self.assertRaises(ClientError):
            self.teardown.terminate_by_tag_filter([])

    def test_stop_by_instance_ids(self):
        stopped = self.teardown.stop_by_instance_ids(["i-1", "i-2"])
        self.assertEqual(sorted(stopped), ["i-1", "i-2"])
        self.assertEqual(self.ec2.stop_instances.call_count, 2)
        self.sleep.assert_not_called()

    def test_stop_requeues_failed_ids(self):
        attempts = {}

        def stop(InstanceIds):
            attempts[InstanceIds[0]] = attempts.get(InstanceIds[0], 0) + 1
            if InstanceIds[0] == "i-2" and attempts["i-2"] == 1:
                raise client_error()

        self.ec2.stop_instances.side_effect = stop
        stopped = self.teardown.stop_by_instance_ids(["i-1", "i-2", "i-3"])

        self.assertEqual(sorted(stopped), ["i-1", "i-2", "i-3"])
        self.sleep.assert_called_once_with(15)

    def test_stop_gives_up_after_rounds(self):
        self.ec2.stop_instances.side_effect = client_error()
        with self.assertRaises(ClientError):
            self.teardown.stop_by_instance_ids(["i-1"])
        self.assertEqual(self.sleep.call_count, 3)

    def test_terminate_by_instance_ids(self):
        self.teardown.terminate_by_instance_ids(["i-1"])
        self.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])

    def test_remove_registrations_matching_labels(self):
        self.registry.list_runners.return_value = [runner(1, "a"), runner(2, "b"), runner(3, "other")]
        removed = self.teardown.remove_registrations(["a", "b"])
        self.assertEqual(removed, [1, 2])
        self.assertEqual([c.args[0] for c in self.registry.delete_runner.call_args_list], [1, 2])

    def test_remove_registrations_nothing_found(self):
        self.registry.list_runners.return_value = [runner(3, "other")]
        self.assertEqual(self.teardown.remove_registrations(["a"]), [])
        self.registry.delete_runner.assert_not_called()

    def test_remove_registrations_tries_all_then_raises(self):
        self.registry.list_runners.return_value = [runner(1, "a"), runner(2, "a")]
        self.registry.delete_runner.side_effect = [RegistryError("boom"), True]
        with self.assertRaises(RegistryError):
            self.teardown.remove_registrations(["a"])
        self.assertEqual(self.registry.delete_runner.call_count, 2)

    def test_remove_registrations_skips_already_gone(self):
        self.registry.list_runners.return_value = [runner(1, "a"), runner(2, "a")]
        self.registry.delete_runner.side_effect = [False, True]
        self.assertEqual(self.teardown.remove_registrations(["a"]), [2])

    def test_discard_terminates_and_deregisters(self):
        self.registry.list_runners.return_value = [runner(7, "b")]
        leases = [InstanceLease("a", "i-a", LeaseState.STALE), InstanceLease("b", "i-b", LeaseState.STALE)]

        self.teardown.discard(leases)

        terminated = sorted(c.kwargs["InstanceIds"][0] for c in self.ec2.terminate_instances.call_args_list)
        self.assertEqual(terminated, ["i-a", "i-b"])
        self.registry.delete_runner.assert_called_once_with(7)
        self.assertTrue(all(l.state == LeaseState.TERMINATED for l in leases))


if __name__ == '__main__':
    unittest.main()
