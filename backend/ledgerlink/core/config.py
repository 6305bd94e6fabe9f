from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PLATFORM_SCOPES = (
    "offline_access accounting.settings.read accounting.contacts.read "
    "accounting.transactions accounting.journals.read"
)


class Settings(BaseSettings):
    app_name: str = "Ledgerlink"

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "ledgerlink"
    postgres_user: str = "ledgerlink"
    postgres_password: str = "ledgerlink"
    database_url: str | None = None

    frontend_origin: str = "http://localhost:3000"
    additional_frontend_origins: str = ""

    jwt_secret_key: str = "change_this_in_production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    token_encryption_key: str | None = None
    auth_cookie_name: str = "access_token"

    platform_client_id: str | None = None
    platform_client_secret: str | None = None
    platform_redirect_uri: str = "http://localhost:8080/integrations/platform/callback"
    platform_oauth_scope: str = DEFAULT_PLATFORM_SCOPES
    platform_authorize_url: str = "https://login.xero.com/identity/connect/authorize"
    platform_token_url: str = "https://identity.xero.com/connect/token"
    platform_connections_url: str = "https://api.xero.com/connections"
    platform_timeout_seconds: float = 20.0
    platform_refresh_margin_seconds: int = 60
    oauth_state_ttl_seconds: int = 600

    public_app_url: str = "http://localhost:3000"
    platform_connected_path: str = "/app/connected"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [self.frontend_origin.strip(), self.public_app_url.strip()]
        if self.additional_frontend_origins.strip():
            origins.extend(
                [value.strip() for value in self.additional_frontend_origins.split(",") if value.strip()]
            )
        unique: list[str] = []
        for origin in origins:
            if origin and origin not in unique:
                unique.append(origin)
        return unique

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


@dataclass(frozen=True)
class PlatformConfig:
    """Immutable view of everything the connection core needs from the environment.

    Built once at startup and passed to the flow handler, the refresh engine and
    the lifecycle manager so none of them read ``settings`` at call time.
    """

    client_id: str | None
    client_secret: str | None
    redirect_uri: str
    scopes: tuple[str, ...]
    authorize_url: str
    token_url: str
    connections_url: str
    state_secret: str
    frontend_base_url: str
    connected_path: str = "/app/connected"
    timeout_seconds: float = 20.0
    refresh_margin_seconds: int = 60
    state_ttl_seconds: int = 600

    @classmethod
    def from_settings(cls, source: Settings) -> "PlatformConfig":
        return cls(
            client_id=source.platform_client_id,
            client_secret=source.platform_client_secret,
            redirect_uri=source.platform_redirect_uri,
            scopes=tuple(scope for scope in source.platform_oauth_scope.split() if scope),
            authorize_url=source.platform_authorize_url,
            token_url=source.platform_token_url,
            connections_url=source.platform_connections_url,
            state_secret=source.jwt_secret_key,
            frontend_base_url=source.public_app_url,
            connected_path=source.platform_connected_path,
            timeout_seconds=source.platform_timeout_seconds,
            refresh_margin_seconds=source.platform_refresh_margin_seconds,
            state_ttl_seconds=source.oauth_state_ttl_seconds,
        )

    @property
    def scope_string(self) -> str:
        return " ".join(self.scopes)

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


settings = Settings()
