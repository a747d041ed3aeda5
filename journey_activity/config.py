from pydantic_settings import BaseSettings, SettingsConfigDict

from journey_activity.domain.normalization import InArgumentFields, NormalizationDefaults
from journey_activity.providers.marketing_cloud.client import MarketingCloudConfig, RowFields


def _norm_base(url: str | None) -> str:
    return (url or "").strip().rstrip("/")


class Settings(BaseSettings):
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"

    sfmc_client_id: str | None = None
    sfmc_client_secret: str | None = None
    sfmc_account_id: str | None = None
    sfmc_scope: str | None = None
    sfmc_subdomain: str | None = None
    sfmc_auth_base_url: str | None = None
    sfmc_rest_base_url: str | None = None
    sfmc_auth_timeout_seconds: float = 10.0
    sfmc_write_timeout_seconds: float = 15.0
    sfmc_token_cache_enabled: bool = False

    de_external_key: str = "Master_Subscriber"
    de_name: str = "Master_Subscriber"
    de_record_key_field: str = "SubscriberKey"
    de_message_field: str = "CustomText"

    activity_log_enabled: bool = True
    activity_log_de_key: str = "CustomActivity_Log"
    activity_log_de_name: str = "Custom_Activity_Execution_Log"

    # Inbound argument names, mirrored from the activity descriptor's inArguments.
    in_argument_record_key_fields: str = "contactKey,subscriberKey"
    in_argument_message_field: str = "customMessage"
    in_argument_correlation_field: str = "uuid"

    default_record_key: str = "UNKNOWN_CONTACT"
    default_message: str = "Contact processed by custom journey activity"
    default_correlation_prefix: str = "unknown"

    # Existing row rewritten by GET /test-update-existing; the route refuses to run when unset.
    test_update_record_key: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    def auth_base_url(self) -> str:
        explicit = _norm_base(self.sfmc_auth_base_url)
        if explicit:
            return explicit.removesuffix("/v2/token")
        if self.sfmc_subdomain:
            return f"https://{self.sfmc_subdomain.strip()}.auth.marketingcloudapis.com"
        return ""

    def rest_base_url(self) -> str:
        explicit = _norm_base(self.sfmc_rest_base_url)
        if explicit:
            return explicit
        if self.sfmc_subdomain:
            return f"https://{self.sfmc_subdomain.strip()}.rest.marketingcloudapis.com"
        return self.auth_base_url().replace(".auth.", ".rest.")

    def marketing_cloud(self) -> MarketingCloudConfig:
        return MarketingCloudConfig(
            client_id=self.sfmc_client_id or "",
            client_secret=self.sfmc_client_secret or "",
            auth_base_url=self.auth_base_url(),
            rest_base_url=self.rest_base_url(),
            account_id=self.sfmc_account_id,
            scope=self.sfmc_scope,
            auth_timeout_seconds=self.sfmc_auth_timeout_seconds,
            write_timeout_seconds=self.sfmc_write_timeout_seconds,
            cache_tokens=self.sfmc_token_cache_enabled,
        )

    def row_fields(self) -> RowFields:
        return RowFields(record_key=self.de_record_key_field, message=self.de_message_field)

    def in_argument_fields(self) -> InArgumentFields:
        aliases = tuple(
            name.strip() for name in self.in_argument_record_key_fields.split(",") if name.strip()
        )
        return InArgumentFields(
            record_key_aliases=aliases or ("contactKey",),
            message=self.in_argument_message_field,
            correlation_id=self.in_argument_correlation_field,
        )

    def normalization_defaults(self) -> NormalizationDefaults:
        return NormalizationDefaults(
            record_key=self.default_record_key,
            message=self.default_message,
            correlation_prefix=self.default_correlation_prefix,
        )


settings = Settings()
