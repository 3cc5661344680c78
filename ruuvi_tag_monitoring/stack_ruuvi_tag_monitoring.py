from aws_cdk import (
    Stack,
    Duration,
    SecretValue,
    CfnOutput,
    aws_iot as iot,
    aws_iam as iam,
    aws_logs as logs,
    aws_cloudwatch as cw,
    aws_secretsmanager as secretsmanager,
    custom_resources as cr,
)
from constructs import Construct

IOT_SQL_VERSION = "2016-03-23"
IOT_SDK_SERVICE = "@aws-sdk/client-iot"

# Humidity comfort band shown on the dashboard
HUMIDITY_LOW = 53
HUMIDITY_HIGH = 75
ALERT_COLOR = "#ff0000"


def metric_namespace(cloudwatch_metric_namespace: str, ruuvi_tag_id: str) -> str:
    return f"{cloudwatch_metric_namespace}/{ruuvi_tag_id}"


def rule_sql(iot_topic_prefix: str, ruuvi_tag_id: str) -> str:
    return f"SELECT temperature,humidity FROM '{iot_topic_prefix}/{ruuvi_tag_id}'"


class RuuviTagMonitoringStack(Stack):
    """IoT thing, credentials, topic rule and dashboard for one RuuviTag.

    The tag is read by a gateway (the thing) which publishes JSON
    measurements to ``{iot_topic_prefix}/{ruuvi_tag_id}``. The topic rule
    turns temperature and humidity into CloudWatch metrics under
    ``{cloudwatch_metric_namespace}/{ruuvi_tag_id}``.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        thing_name: str,
        iot_topic_prefix: str,
        cloudwatch_metric_namespace: str,
        ruuvi_tag_id: str,
        **kwargs,
    ):
        super().__init__(scope, construct_id, **kwargs)

        namespace = metric_namespace(cloudwatch_metric_namespace, ruuvi_tag_id)

        # --- Device identity ---
        thing = iot.CfnThing(
            self,
            thing_name,
            thing_name=thing_name,
        )

        # The private key is only returned by the create call.
        # Delete is keyed by the certificate id captured as physical id.
        certificate = cr.AwsCustomResource(
            self,
            "IotThingKeysAndCert",
            function_name=self.stack_name + "CreateIotThingKeysAndCert",
            on_create=cr.AwsSdkCall(
                service=IOT_SDK_SERVICE,
                action="CreateKeysAndCertificateCommand",
                parameters={
                    "setAsActive": True,
                },
                physical_resource_id=cr.PhysicalResourceId.from_response("certificateId"),
                output_paths=[
                    "certificateArn",
                    "certificatePem",
                    "keyPair.PrivateKey",
                ],
            ),
            on_delete=cr.AwsSdkCall(
                service=IOT_SDK_SERVICE,
                action="DeleteCertificateCommand",
                parameters={
                    "certificateId": cr.PhysicalResourceIdReference(),
                },
            ),
            log_retention=logs.RetentionDays.SIX_MONTHS,
            policy=cr.AwsCustomResourcePolicy.from_sdk_calls(
                resources=cr.AwsCustomResourcePolicy.ANY_RESOURCE
            ),
        )
        certificate_arn = certificate.get_response_field("certificateArn")

        certificate_secret = secretsmanager.Secret(
            self,
            "IotThingKeysAndCertSecret",
            secret_object_value={
                "certificatePem": SecretValue.unsafe_plain_text(
                    certificate.get_response_field("certificatePem")
                ),
                "privateKey": SecretValue.unsafe_plain_text(
                    certificate.get_response_field("keyPair.PrivateKey")
                ),
            },
        )

        # thing_name is a plain string, not a reference to the thing
        thing_attachment = iot.CfnThingPrincipalAttachment(
            self,
            "IotThingPrincipalAttachment",
            principal=certificate_arn,
            thing_name=thing_name,
        )
        thing_attachment.add_dependency(thing)

        # --- Access policy ---
        policy = iot.CfnPolicy(
            self,
            f"{thing_name}Policy",
            policy_name=f"{thing_name}Policy",
            policy_document={
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Action": ["iot:Publish"],
                        "Resource": [
                            f"arn:aws:iot:{self.region}:{self.account}:topic/{iot_topic_prefix}/*"
                        ],
                    },
                    {
                        "Effect": "Allow",
                        "Action": ["iot:Connect"],
                        "Resource": [
                            f"arn:aws:iot:{self.region}:{self.account}:client/{thing.ref}"
                        ],
                    },
                ],
            },
        )

        policy_attachment = iot.CfnPolicyPrincipalAttachment(
            self,
            "IotThingPolicyPrincipalAttachment",
            principal=certificate_arn,
            policy_name=policy.policy_name,
        )
        policy_attachment.add_dependency(policy)

        # --- Topic rule ---
        error_log = logs.LogGroup(
            self,
            "IotRuleErrorLog",
            retention=logs.RetentionDays.SIX_MONTHS,
        )

        rule_role = iam.Role(
            self,
            "IotRuleRole",
            assumed_by=iam.ServicePrincipal("iot.amazonaws.com"),
            inline_policies={
                "putMetricsPolicy": iam.PolicyDocument(
                    statements=[
                        iam.PolicyStatement(
                            actions=["cloudwatch:PutMetricData"],
                            # PutMetricData has no resource-level permissions
                            resources=["*"],
                        )
                    ]
                )
            },
        )
        error_log.grant_write(rule_role)

        topic_rule = iot.CfnTopicRule(
            self,
            f"IotRule_{ruuvi_tag_id}",
            rule_name=f"RuuviTagEvents_{ruuvi_tag_id}",
            topic_rule_payload=iot.CfnTopicRule.TopicRulePayloadProperty(
                sql=rule_sql(iot_topic_prefix, ruuvi_tag_id),
                aws_iot_sql_version=IOT_SQL_VERSION,
                rule_disabled=False,
                actions=[
                    iot.CfnTopicRule.ActionProperty(
                        cloudwatch_metric=iot.CfnTopicRule.CloudwatchMetricActionProperty(
                            metric_name="Temperature",
                            metric_namespace=namespace,
                            metric_unit="None",
                            metric_value="${temperature}",
                            role_arn=rule_role.role_arn,
                        )
                    ),
                    iot.CfnTopicRule.ActionProperty(
                        cloudwatch_metric=iot.CfnTopicRule.CloudwatchMetricActionProperty(
                            metric_name="Humidity",
                            metric_namespace=namespace,
                            metric_unit="None",
                            metric_value="${humidity}",
                            role_arn=rule_role.role_arn,
                        )
                    ),
                ],
                error_action=iot.CfnTopicRule.ActionProperty(
                    cloudwatch_logs=iot.CfnTopicRule.CloudwatchLogsActionProperty(
                        log_group_name=error_log.log_group_name,
                        role_arn=rule_role.role_arn,
                    )
                ),
            ),
        )
        # also waits for the role's default policy (log write grant)
        topic_rule.node.add_dependency(error_log, rule_role)

        # --- Dashboard ---
        dashboard = cw.Dashboard(
            self,
            "Dashboard",
            dashboard_name=f"{thing_name}-Dashboard",
            start="-P7D",
            widgets=[
                [
                    cw.GraphWidget(
                        title="Kosteus (%)",
                        left=[
                            cw.Metric(
                                namespace=namespace,
                                metric_name="Humidity",
                                statistic="Average",
                                period=Duration.minutes(5),
                            )
                        ],
                        left_annotations=[
                            cw.HorizontalAnnotation(
                                value=HUMIDITY_LOW,
                                color=ALERT_COLOR,
                                fill=cw.Shading.BELOW,
                                label="Low",
                            ),
                            cw.HorizontalAnnotation(
                                value=HUMIDITY_HIGH,
                                color=ALERT_COLOR,
                                fill=cw.Shading.ABOVE,
                                label="High",
                            ),
                        ],
                        left_y_axis=cw.YAxisProps(min=45, max=85, show_units=False),
                        legend_position=cw.LegendPosition.HIDDEN,
                        region=self.region,
                        width=6,
                        height=6,
                    )
                ]
            ],
        )

        CfnOutput(self, "IotThingName", value=thing.ref, description="IoT thing of the gateway")
        CfnOutput(
            self,
            "CertificateSecretArn",
            value=certificate_secret.secret_arn,
            description="Secret holding certificatePem and privateKey",
        )
        CfnOutput(self, "TopicRuleName", value=topic_rule.ref)
        CfnOutput(self, "DashboardName", value=dashboard.dashboard_name)

        self.thing = thing
        self.certificate = certificate
        self.certificate_secret = certificate_secret
        self.policy = policy
        self.topic_rule = topic_rule
        self.error_log = error_log
        self.rule_role = rule_role
        self.dashboard = dashboard
