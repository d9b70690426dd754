import os

from aws_cdk import (
    BundlingOptions,
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_cloudwatch as cloudwatch,
    aws_cognito as cognito,
    aws_dynamodb as ddb,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct

OWNER_INDEX_NAME = "ownerId-createdAt-index"
METRIC_NAMESPACE = "TaskTracker"
HANDLER_ASSET_DIR = "lambda"
# Handlers import PyJWT, which the Lambda runtime does not provide.
BUNDLING_COMMAND = "pip install --no-cache-dir -r requirements.txt -t /asset-output && cp -au . /asset-output"


class TaskTrackerStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # Dev-first default: delete stateful resources on teardown.
        # For production deployments, set DATA_RETENTION_MODE=retain.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        schema_version = "2026-03-01"
        name_prefix = f"{construct_id}-{stage_name}"

        tasks_table = ddb.Table(
            self,
            "Tasks",
            partition_key=ddb.Attribute(name="id", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )
        tasks_table.add_global_secondary_index(
            index_name=OWNER_INDEX_NAME,
            partition_key=ddb.Attribute(name="ownerId", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="createdAt", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )

        user_pool = cognito.UserPool(
            self,
            "TaskTrackerUserPool",
            user_pool_name=f"{name_prefix}-users",
            self_sign_up_enabled=False,
            sign_in_aliases=cognito.SignInAliases(email=True),
            standard_attributes=cognito.StandardAttributes(
                email=cognito.StandardAttribute(required=True, mutable=True),
                fullname=cognito.StandardAttribute(required=False, mutable=True),
            ),
            password_policy=cognito.PasswordPolicy(
                min_length=8,
                require_digits=False,
                require_lowercase=False,
                require_uppercase=False,
                require_symbols=False,
            ),
            account_recovery=cognito.AccountRecovery.EMAIL_ONLY,
            removal_policy=stateful_removal_policy,
        )
        user_pool_client = user_pool.add_client(
            "TaskTrackerUserPoolClient",
            auth_flows=cognito.AuthFlow(user_password=True, admin_user_password=True),
            generate_secret=False,
            refresh_token_validity=Duration.days(30),
        )

        handler_code = _lambda.Code.from_asset(
            HANDLER_ASSET_DIR,
            bundling=BundlingOptions(
                image=_lambda.Runtime.PYTHON_3_12.bundling_image,
                command=["bash", "-c", BUNDLING_COMMAND],
            ),
        )

        tasks_fn = _lambda.Function(
            self,
            "TasksHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="tasks_handler.handler",
            code=handler_code,
            timeout=Duration.seconds(15),
            environment={
                "TASKS_TABLE_NAME": tasks_table.table_name,
                "TASKS_OWNER_INDEX": OWNER_INDEX_NAME,
                "TASKS_SCHEMA_VERSION": schema_version,
                "TASKS_IDENTITY_MODE": "jwks",
                "TASKS_STORE_TIMEOUT_SECONDS": "5",
                "USER_POOL_ID": user_pool.user_pool_id,
                "USER_POOL_CLIENT_ID": user_pool_client.user_pool_client_id,
            },
        )
        tasks_table.grant_read_write_data(tasks_fn)

        auth_fn = _lambda.Function(
            self,
            "AuthHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="auth_handler.handler",
            code=handler_code,
            timeout=Duration.seconds(10),
            environment={
                "USER_POOL_ID": user_pool.user_pool_id,
                "USER_POOL_CLIENT_ID": user_pool_client.user_pool_client_id,
                "AUTH_SCHEMA_VERSION": schema_version,
            },
        )
        user_pool.grant(
            auth_fn,
            "cognito-idp:AdminCreateUser",
            "cognito-idp:AdminSetUserPassword",
            "cognito-idp:AdminGetUser",
        )

        # Create the Lambda log groups explicitly so metric filters can be created during stack deploy.
        log_groups = {
            "Tasks": logs.LogGroup(
                self,
                "TasksLogGroup",
                log_group_name=f"/aws/lambda/{tasks_fn.function_name}",
                retention=logs.RetentionDays.ONE_WEEK,
                removal_policy=stateful_removal_policy,
            ),
            "Auth": logs.LogGroup(
                self,
                "AuthLogGroup",
                log_group_name=f"/aws/lambda/{auth_fn.function_name}",
                retention=logs.RetentionDays.ONE_WEEK,
                removal_policy=stateful_removal_policy,
            ),
        }
        error_metric = cloudwatch.Metric(
            namespace=METRIC_NAMESPACE,
            metric_name="Errors",
            statistic="Sum",
            period=Duration.minutes(5),
        )
        for label, log_group in log_groups.items():
            logs.MetricFilter(
                self,
                f"{label}ErrorMetricFilter",
                log_group=log_group,
                metric_namespace=METRIC_NAMESPACE,
                metric_name="Errors",
                filter_pattern=logs.FilterPattern.string_value("$.outcome", "=", "error"),
                metric_value="1",
            )
        cloudwatch.Alarm(
            self,
            "TaskTrackerErrorsAlarm",
            metric=error_metric,
            threshold=1,
            evaluation_periods=1,
            datapoints_to_alarm=1,
        )

        access_log_group = logs.LogGroup(
            self,
            "ApiAccessLogGroup",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )
        rest_api = apigw.RestApi(
            self,
            "TaskTrackerApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(
                stage_name=stage_name,
                access_log_destination=apigw.LogGroupLogDestination(access_log_group),
                # Standard fields only; do not log headers (e.g., Authorization).
                access_log_format=apigw.AccessLogFormat.json_with_standard_fields(
                    caller=True,
                    http_method=True,
                    ip=True,
                    protocol=True,
                    request_time=True,
                    resource_path=True,
                    response_length=True,
                    status=True,
                    user=True,
                ),
            ),
            default_cors_preflight_options=apigw.CorsOptions(
                allow_origins=apigw.Cors.ALL_ORIGINS,
                allow_methods=apigw.Cors.ALL_METHODS,
                allow_headers=["content-type", "authorization", "x-amz-date", "x-api-key", "x-amz-security-token"],
            ),
            cloud_watch_role=True,
        )

        v1 = rest_api.root.add_resource("v1")
        auth = v1.add_resource("auth")
        auth_register = auth.add_resource("register")
        auth_login = auth.add_resource("login")
        auth_me = auth.add_resource("me")
        tasks = v1.add_resource("tasks")
        tasks_summary = tasks.add_resource("summary")
        task = tasks.add_resource("{id}")

        authorizer = apigw.CognitoUserPoolsAuthorizer(
            self,
            "TaskTrackerCognitoAuthorizer",
            cognito_user_pools=[user_pool],
        )
        auth_integration = apigw.LambdaIntegration(auth_fn)
        tasks_integration = apigw.LambdaIntegration(tasks_fn)

        for resource in (auth, auth_register, auth_login):
            resource.add_method(
                "POST",
                auth_integration,
                authorization_type=apigw.AuthorizationType.NONE,
            )
        auth_me.add_method(
            "GET",
            auth_integration,
            authorization_type=apigw.AuthorizationType.COGNITO,
            authorizer=authorizer,
        )
        for resource, methods in (
            (tasks, ("GET", "POST")),
            (tasks_summary, ("GET",)),
            (task, ("GET", "PUT", "PATCH", "DELETE")),
        ):
            for method in methods:
                resource.add_method(
                    method,
                    tasks_integration,
                    authorization_type=apigw.AuthorizationType.COGNITO,
                    authorizer=authorizer,
                )

        CfnOutput(
            self,
            "TasksApiUrl",
            value=f"{rest_api.url}v1",
            description="Base URL for the task tracker API (append /tasks or /auth).",
        )
        CfnOutput(
            self,
            "TasksTableName",
            value=tasks_table.table_name,
        )
        CfnOutput(
            self,
            "UserPoolId",
            value=user_pool.user_pool_id,
        )
        CfnOutput(
            self,
            "UserPoolClientId",
            value=user_pool_client.user_pool_client_id,
        )
