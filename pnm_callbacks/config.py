"""
Application Configuration Management

Loads configuration from environment variables and AWS Secrets Manager.
Supports both development (env vars) and production (Secrets Manager) modes.
Auto-detects AWS Lambda runtime environment.
"""

import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import boto3
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development", description="Environment name")

    # Application
    app_name: str = Field(default="PayNearMe Callback Receiver")
    app_version: str = Field(default="1.0.0")
    log_level: str = Field(default="INFO")

    # FastAPI
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    callback_path_prefix: str = Field(
        default="", description="Path prefix for /authorize and /confirm"
    )

    # Callback trust
    pnm_secret: Optional[str] = Field(default=None, description="Shared callback signing secret")
    signature_algorithm: str = Field(default="md5", description="Callback signature algorithm")
    callback_max_age_seconds: int = Field(
        default=300, description="Oldest accepted callback timestamp, in seconds"
    )
    callback_max_future_seconds: int = Field(
        default=60, description="Clock skew tolerated for future timestamps, in seconds"
    )

    # Responses
    xml_namespace: str = Field(default="http://www.paynearme.com/api/pnm_xmlschema_v2_0")
    authorize_accept_prefix: str = Field(
        default="TEST", description="Site order identifier prefix accepted by /authorize"
    )

    # Request timing
    slow_request_threshold_ms: float = Field(default=6000.0)

    # Idempotency ledger
    ledger_backend: str = Field(default="memory", description="memory, dynamodb or redis")
    ledger_timeout_seconds: float = Field(default=2.0)
    ledger_ttl_seconds: Optional[int] = Field(
        default=None, description="Ledger record retention (None = keep forever)"
    )
    ledger_claim_lease_seconds: Optional[int] = Field(
        default=60, description="Age after which an unfinished recording claim is taken over"
    )
    confirm_settle_timeout_seconds: float = Field(
        default=2.0, description="How long a duplicate /confirm waits for an in-flight recording"
    )

    # AWS
    aws_region: str = Field(default="us-east-1")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    aws_endpoint_url: Optional[str] = Field(default=None)

    # DynamoDB
    dynamodb_table_name: str = Field(default="pnm-callback-ledger")

    # Redis
    redis_host: Optional[str] = Field(default=None)
    redis_port: int = Field(default=6379)
    redis_password: Optional[str] = Field(default=None)
    redis_ssl: bool = Field(default=False)

    # Payment recording
    payment_recorder: str = Field(default="log", description="log or sqs")
    payment_queue_url: Optional[str] = Field(
        default=None, description="SQS queue URL for confirmed payments"
    )
    recorder_max_attempts: int = Field(default=3)
    recorder_backoff_max: int = Field(default=2)

    # Special conditions
    maintenance_mode: bool = Field(default=False)
    maintenance_endpoints: List[str] = Field(default=["authorize", "confirm"])
    maintenance_status_code: int = Field(default=503)
    maintenance_retry_after_seconds: Optional[int] = Field(default=300)

    # AWS Secrets Manager
    use_secrets_manager: bool = Field(default=False)
    secrets_manager_secret_name: str = Field(default="pnm-callbacks/prod")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment"""
        valid_envs = ["development", "test", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v_lower

    @field_validator("ledger_backend", "payment_recorder", "signature_algorithm")
    @classmethod
    def lowercase_choice(cls, v: str) -> str:
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.environment == "development"

    @property
    def is_lambda(self) -> bool:
        """Check if running in AWS Lambda environment"""
        return bool(os.getenv("AWS_LAMBDA_FUNCTION_NAME"))

    @property
    def redis_url(self) -> Optional[str]:
        """Get Redis connection URL"""
        if not self.redis_host:
            return None
        protocol = "rediss" if self.redis_ssl else "redis"
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"{protocol}://{auth}{self.redis_host}:{self.redis_port}/0"

    def validate_required_secrets(self) -> None:
        """
        Validate that required secrets are present.
        Raises ValueError if any required secrets are missing.
        """
        missing = []

        if not self.pnm_secret:
            missing.append("pnm_secret")
        if self.ledger_backend == "redis" and not self.redis_host:
            missing.append("redis_host")
        if self.payment_recorder == "sqs" and not self.payment_queue_url:
            missing.append("payment_queue_url")

        if missing:
            raise ValueError(
                f"Missing required configuration: {', '.join(missing)}. "
                f"In Lambda, ensure PNM_SECRET_ARN is set. "
                f"Locally, ensure .env file or environment variables are configured."
            )


class SecretsManager:
    """AWS Secrets Manager client for retrieving production secrets"""

    def __init__(self, region: str, secret_name: str):
        self.client = boto3.client("secretsmanager", region_name=region)
        self.secret_name = secret_name

    def get_secrets(self) -> Dict[str, Any]:
        """Retrieve secrets from AWS Secrets Manager"""
        try:
            response = self.client.get_secret_value(SecretId=self.secret_name)
            secret_string = response.get("SecretString")
            if secret_string:
                return json.loads(secret_string)
            return {}
        except Exception as e:
            raise RuntimeError(f"Failed to retrieve secrets from Secrets Manager: {e}")


def _fetch_secret_by_arn(arn: str, region: str) -> str:
    """
    Fetch a secret value from AWS Secrets Manager using ARN.

    Args:
        arn: The ARN of the secret
        region: AWS region

    Returns:
        The secret value as a string
    """
    try:
        client = boto3.client("secretsmanager", region_name=region)
        response = client.get_secret_value(SecretId=arn)
        return response.get("SecretString", "")
    except Exception as e:
        raise RuntimeError(f"Failed to retrieve secret from ARN {arn}: {e}")


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).
    Loads from AWS Secrets Manager in production, environment variables otherwise.

    In Lambda, the callback secret is fetched from Secrets Manager using the
    PNM_SECRET_ARN environment variable.
    """
    is_lambda = bool(os.getenv("AWS_LAMBDA_FUNCTION_NAME"))
    pnm_secret_arn = os.getenv("PNM_SECRET_ARN")

    # If in Lambda with an ARN, fetch the secret and inject it before Settings init
    if is_lambda and pnm_secret_arn and not os.getenv("PNM_SECRET"):
        region = os.getenv("AWS_REGION", "us-east-1")
        try:
            os.environ["PNM_SECRET"] = _fetch_secret_by_arn(pnm_secret_arn, region)
        except RuntimeError as e:
            # Settings validation below reports the missing secret
            print(f"Error loading secrets from Secrets Manager: {e}")

    settings = Settings()

    # Single secret containing several values, outside Lambda
    if settings.use_secrets_manager and not is_lambda:
        try:
            secrets_manager = SecretsManager(
                region=settings.aws_region,
                secret_name=settings.secrets_manager_secret_name,
            )
            secrets = secrets_manager.get_secrets()

            for key, value in secrets.items():
                if hasattr(settings, key.lower()):
                    setattr(settings, key.lower(), value)

        except RuntimeError as e:
            print(f"Warning: Failed to load secrets from Secrets Manager: {e}")

    settings.validate_required_secrets()

    return settings


# Export singleton instance
settings = get_settings()
