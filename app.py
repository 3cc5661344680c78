#!/usr/bin/env python3
import logging

import aws_cdk as cdk

from ruuvi_tag_monitoring.config import MonitoringConfig
from ruuvi_tag_monitoring.stack_ruuvi_tag_monitoring import RuuviTagMonitoringStack

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("app")

app = cdk.App()

config = MonitoringConfig.from_context(app.node)
logger.info(
    "Synthesizing %s for tag %s (topic prefix %s, region %s)",
    config.thing_name,
    config.ruuvi_tag_id,
    config.iot_topic_prefix,
    config.region,
)

RuuviTagMonitoringStack(
    app,
    "RuuviTagMonitoringStack",
    env=config.env(),
    **config.stack_kwargs()
)

app.synth()
