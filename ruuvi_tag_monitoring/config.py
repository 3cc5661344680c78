import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

import aws_cdk as cdk
from constructs import Node

from ruuvi_tag_monitoring.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Context keys, as written in cdk.json or passed with `cdk synth -c key=value`
THING_NAME = "thingName"
IOT_TOPIC_PREFIX = "iotTopicPrefix"
CLOUDWATCH_METRIC_NAMESPACE = "cloudWatchMetricNameSpace"
RUUVI_TAG_ID = "ruuviTagId"
ACCOUNT = "account"
REGION = "region"

# The thing name also feeds the "{name}Policy" policy name (max 128) and the
# "{name}-Dashboard" dashboard name, which allow no ":".
THING_NAME_PATTERN = re.compile(r"[a-zA-Z0-9_-]{1,122}")
# The tag id ends up in the "RuuviTagEvents_{id}" rule name (max 128)
RUUVI_TAG_ID_PATTERN = re.compile(r"[a-zA-Z0-9_]{1,113}")
TOPIC_WILDCARDS = ("+", "#", "*")
# quotes the topic in the rule SQL
SQL_QUOTE = "'"


@dataclass(frozen=True)
class MonitoringConfig:
    thing_name: str
    iot_topic_prefix: str
    cloudwatch_metric_namespace: str
    ruuvi_tag_id: str
    account: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def from_context(cls, node: Node) -> "MonitoringConfig":
        """Build the configuration from the CDK context of ``node``.

        The four device inputs have no defaults and must be present in the
        context. Account and region fall back to the usual AWS environment
        variables; an unset account leaves the stack account-agnostic.
        """
        values = {}
        for key in (THING_NAME, IOT_TOPIC_PREFIX, CLOUDWATCH_METRIC_NAMESPACE, RUUVI_TAG_ID):
            value = node.try_get_context(key)
            if value is None:
                raise ConfigurationError(key, "missing from the CDK context")
            values[key] = value

        region = node.try_get_context(REGION)
        if region is None:
            region = os.getenv("CDK_DEFAULT_REGION") or os.getenv("AWS_REGION")
            if region is None:
                logger.warning("No region in context or environment, stack is region-agnostic")
            else:
                logger.info("Region not in context, using environment value %s", region)

        account = node.try_get_context(ACCOUNT)
        if account is None:
            account = os.getenv("AWS_ACCOUNT_ID") or os.getenv("CDK_DEFAULT_ACCOUNT")
            logger.debug("Account not in context, using environment value %s", account)

        config = cls(
            thing_name=values[THING_NAME],
            iot_topic_prefix=values[IOT_TOPIC_PREFIX],
            cloudwatch_metric_namespace=values[CLOUDWATCH_METRIC_NAMESPACE],
            ruuvi_tag_id=values[RUUVI_TAG_ID],
            account=account,
            region=region,
        )
        config.validate()
        return config

    def validate(self) -> None:
        _require_text(THING_NAME, self.thing_name)
        _require_text(IOT_TOPIC_PREFIX, self.iot_topic_prefix)
        _require_text(CLOUDWATCH_METRIC_NAMESPACE, self.cloudwatch_metric_namespace)
        _require_text(RUUVI_TAG_ID, self.ruuvi_tag_id)

        if not THING_NAME_PATTERN.fullmatch(self.thing_name):
            raise ConfigurationError(
                THING_NAME, f"{self.thing_name!r} is not a valid IoT thing name"
            )

        _require_topic_segment(IOT_TOPIC_PREFIX, self.iot_topic_prefix)
        _require_topic_segment(RUUVI_TAG_ID, self.ruuvi_tag_id)
        if not RUUVI_TAG_ID_PATTERN.fullmatch(self.ruuvi_tag_id):
            raise ConfigurationError(
                RUUVI_TAG_ID, f"{self.ruuvi_tag_id!r} must be letters, digits or '_' only"
            )

    def env(self) -> cdk.Environment:
        return cdk.Environment(account=self.account, region=self.region)

    def stack_kwargs(self) -> dict:
        return {
            "thing_name": self.thing_name,
            "iot_topic_prefix": self.iot_topic_prefix,
            "cloudwatch_metric_namespace": self.cloudwatch_metric_namespace,
            "ruuvi_tag_id": self.ruuvi_tag_id,
        }


def _require_text(key: str, value) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(key, "must be a non-empty string")


def _require_topic_segment(key: str, value: str) -> None:
    for wildcard in TOPIC_WILDCARDS:
        if wildcard in value:
            raise ConfigurationError(key, f"must not contain the wildcard {wildcard!r}")
    if value.startswith("/") or value.endswith("/"):
        raise ConfigurationError(key, "must not start or end with '/'")
    if "//" in value:
        raise ConfigurationError(key, "must not contain empty topic levels")
    if SQL_QUOTE in value:
        raise ConfigurationError(key, "must not contain quotes")
