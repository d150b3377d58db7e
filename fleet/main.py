import argparse
import json
import logging
import logging.config
import os
import sys

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError

from fleet.config_loader import launch_template, load_runtime_config, validate_config
from fleet.errors import ConfigError, FleetError
from fleet.labels import LabelAllocator
from fleet.launcher import FleetLauncher
from fleet.models import RunContext
from fleet.pricing import PricingAdvisor
from fleet.provisioner import FleetProvisioner
from fleet.reconciler import RegistrationReconciler
from fleet.teardown import Teardown
from registry.github_registry import GitHubRunnerRegistry, RegistryError

# the Pricing API is only served from a few regions
PRICING_REGION = "us-east-1"


def load_logging_config(path="config/logging.yaml"):
    try:
        with open(path) as f:
            cfg = yaml.safe_load(f)
        logging.config.dictConfig(cfg)
    except Exception:
        logging.basicConfig(
            level=logging.INFO,
            format='{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","msg":"%(message)s"}',
        )


def write_output(mapping):
    payload = json.dumps(mapping)
    print(payload)
    output_path = os.getenv("GITHUB_OUTPUT")
    if output_path:
        with open(output_path, "a") as f:
            f.write(f"label-instance-map={payload}\n")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Start or stop a fleet of self-hosted runners on EC2.")
    parser.add_argument("mode", nargs="?", choices=["start", "stop"], help="start or stop (or FLEET_MODE)")
    parser.add_argument("--config", default="config/runtime.yaml", help="Runtime config path")
    parser.add_argument("--logging-config", default="config/logging.yaml", help="Logging config path")
    parser.add_argument("--repository", dest="github_repository", help="GitHub repository as owner/repo")
    parser.add_argument("--region", dest="aws_region", help="AWS region")
    parser.add_argument("--image-id", dest="ec2_image_id", help="AMI ID for the runners")
    parser.add_argument("--instance-type", dest="ec2_instance_type", help="Instance type for the runners")
    parser.add_argument("--subnet-id", help="Subnet to launch into")
    parser.add_argument("--security-group-id", help="Security group for the runners")
    parser.add_argument("--iam-role-name", help="Instance profile name")
    parser.add_argument("--label", help="Run label (generated in start mode when omitted)")
    parser.add_argument("--instance-ids", dest="ec2_instance_ids", help="Comma-separated ids to stop (stop mode)")
    parser.add_argument("--runner-home-dir", help="Pre-installed runner directory inside the image")
    parser.add_argument("--pre-runner-script", help="Shell snippet run before the runner is configured")
    parser.add_argument("--strategy", help="spotonly | besteffort | maxperformance | none")
    parser.add_argument("--count", type=int, help="Number of runners to start")
    parser.add_argument("--aws-resource-tags", help='JSON list of {"Key": ..., "Value": ...} tags')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    load_logging_config(args.logging_config)
    log = logging.getLogger("fleet.main")

    overrides = {k: v for k, v in vars(args).items() if k not in ("config", "logging_config")}
    try:
        cfg = load_runtime_config(args.config, overrides=overrides)
        strategy = validate_config(cfg)
    except ConfigError as e:
        raise SystemExit(f"Invalid configuration: {e}")

    allocator = LabelAllocator()
    if not cfg.get("label"):
        cfg["label"] = allocator.generate(1)[0]

    session = boto3.Session(region_name=cfg.get("aws_region"))
    ec2 = session.client("ec2")
    ctx = RunContext(run_label=cfg["label"], target_count=cfg["count"], strategy=strategy)
    registry = GitHubRunnerRegistry(cfg["github_token"], cfg["github_repository"], ctx=ctx)
    teardown = Teardown(ec2, registry)

    advisor = PricingAdvisor(
        ec2,
        session.client("pricing", region_name=PRICING_REGION),
        region=session.region_name,
        subnet_id=cfg.get("subnet_id"),
    )
    provisioner = FleetProvisioner(ec2, advisor, launch_template(cfg) if cfg["mode"] == "start" else {}, strategy)
    launcher = FleetLauncher(
        cfg,
        registry,
        allocator,
        provisioner,
        RegistrationReconciler(registry),
        teardown,
    )

    log.info("Running %s for label %s", cfg["mode"], cfg["label"])
    try:
        if cfg["mode"] == "start":
            write_output(launcher.start(ctx))
        else:
            launcher.stop()
    except (FleetError, RegistryError, ClientError, BotoCoreError) as e:
        log.error("Run %s failed: %s", cfg["label"], e)
        sys.exit(1)


if __name__ == "__main__":
    main()
