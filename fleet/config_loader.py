# fleet/config_loader.py
import json
import os
from pathlib import Path

import yaml

from fleet.errors import ConfigError
from fleet.models import PurchasingStrategy

RUNTIME_CONFIG_PATH = Path("config/runtime.yaml")

RUN_LABEL_TAG = "gh-runner-label"
STRATEGY_TAG = "gh-spot-strategy"

# key -> environment variable
ENV_KEYS = {
    "mode": "FLEET_MODE",
    "github_token": "GITHUB_TOKEN",
    "github_repository": "GITHUB_REPOSITORY",
    "aws_region": "AWS_REGION",
    "ec2_image_id": "EC2_IMAGE_ID",
    "ec2_instance_type": "EC2_INSTANCE_TYPE",
    "subnet_id": "SUBNET_ID",
    "security_group_id": "SECURITY_GROUP_ID",
    "iam_role_name": "IAM_ROLE_NAME",
    "label": "RUNNER_LABEL",
    "ec2_instance_ids": "EC2_INSTANCE_IDS",
    "runner_home_dir": "RUNNER_HOME_DIR",
    "pre_runner_script": "PRE_RUNNER_SCRIPT",
    "strategy": "SPOT_INSTANCE_STRATEGY",
    "count": "RUNNER_COUNT",
    "aws_resource_tags": "AWS_RESOURCE_TAGS",
}


def load_runtime_config(path=RUNTIME_CONFIG_PATH, overrides=None):
    """
    Loads configuration for a fleet run.
    Priority:
      1) explicit overrides (CLI flags), ignoring None
      2) Environment variables
      3) config/runtime.yaml (if present)
    """
    raw = {}
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    cfg = {}
    for key, env in ENV_KEYS.items():
        cfg[key] = os.getenv(env) or raw.get(key)
    for key, value in (overrides or {}).items():
        if value is not None:
            cfg[key] = value

    cfg["count"] = _as_int(cfg.get("count"), default=1)
    cfg["ec2_instance_ids"] = _as_list(cfg.get("ec2_instance_ids"))
    cfg["aws_resource_tags"] = _as_tags(cfg.get("aws_resource_tags"))
    cfg["raw"] = raw
    return cfg


def _as_int(value, default):
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"count must be an integer, got {value!r}")


def _as_list(value):
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return list(value)


def _as_tags(value):
    if not value:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigError(f"aws_resource_tags is not valid JSON: {e}")
    if not isinstance(value, list) or not all(isinstance(t, dict) and "Key" in t for t in value):
        raise ConfigError("aws_resource_tags must be a JSON list of {Key, Value} objects")
    return value


def validate_config(cfg):
    """
    Raise ConfigError for anything a run cannot start with. Returns the parsed strategy.
    """
    mode = cfg.get("mode")
    if not mode:
        raise ConfigError("The 'mode' input is not specified")
    if not cfg.get("github_token"):
        raise ConfigError("The 'github-token' input is not specified")
    if not cfg.get("github_repository") or "/" not in cfg["github_repository"]:
        raise ConfigError("The GitHub repository must be given as 'owner/repo'")

    if mode == "start":
        if not all([cfg.get("ec2_image_id"), cfg.get("ec2_instance_type"), cfg.get("security_group_id")]):
            raise ConfigError("Not all the required inputs are provided for the 'start' mode")
        if cfg.get("count", 0) < 1:
            raise ConfigError("count must be at least 1")
    elif mode == "stop":
        if not cfg.get("label"):
            raise ConfigError("Not all the required inputs are provided for the 'stop' mode")
    else:
        raise ConfigError("Wrong mode. Allowed values: start, stop.")

    return PurchasingStrategy.parse(cfg.get("strategy"))


def tag_specifications(cfg):
    tags = list(cfg.get("aws_resource_tags") or []) + [
        {"Key": RUN_LABEL_TAG, "Value": cfg["label"]},
        {"Key": STRATEGY_TAG, "Value": PurchasingStrategy.parse(cfg.get("strategy")).value},
    ]
    return [
        {"ResourceType": "instance", "Tags": list(tags)},
        {"ResourceType": "volume", "Tags": list(tags)},
    ]


def identifying_filters(cfg):
    # the strategy tag is left out: instances started under a fallback carry another value
    filters = [{"Name": f"tag:{RUN_LABEL_TAG}", "Values": [cfg["label"]]}]
    filters += [
        {"Name": f"tag:{t['Key']}", "Values": [t.get("Value", "")]}
        for t in cfg.get("aws_resource_tags") or []
    ]
    return filters


def launch_template(cfg):
    """Base run_instances request shared by every batch of a run."""
    template = {
        "ImageId": cfg["ec2_image_id"],
        "InstanceType": cfg["ec2_instance_type"],
        "SecurityGroupIds": [cfg["security_group_id"]],
        "TagSpecifications": tag_specifications(cfg),
    }
    if cfg.get("subnet_id"):
        template["SubnetId"] = cfg["subnet_id"]
    if cfg.get("iam_role_name"):
        template["IamInstanceProfile"] = {"Name": cfg["iam_role_name"]}
    return template
