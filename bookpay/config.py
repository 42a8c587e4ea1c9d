from typing import Optional
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    env: str = "local"

    postgres_user: str = "bookstore"
    postgres_password: str = "bookstore"
    postgres_db: str = "bookstore"
    postgres_host: str = "localhost"
    postgres_port: str = "5432"

    # full SQLAlchemy URL, wins over the postgres_* parts when set
    sqlalchemy_url: Optional[str] = None

    secret_key: str = "change-me"
    algorithm: str = "HS256"

    # order policy
    order_expiry_hours: int = 24
    order_number_retries: int = 3

    # per-user order creation budget
    rate_limit_max_attempts: int = 10
    rate_limit_window_seconds: int = 3600

    # expiry sweeper
    expiry_sweep_enabled: bool = True
    expiry_sweep_interval_seconds: int = 3600
    expiry_sweep_batch_size: int = 500

    # payment gateway
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    currency: str = "INR"
    frontend_base_url: str = "http://localhost:5173"

    log_level: str = "INFO"

    @property
    def database_url(self):
        if self.sqlalchemy_url:
            return self.sqlalchemy_url

        encoded_password = quote_plus(self.postgres_password)
        return (
            f"postgresql+psycopg2://{self.postgres_user}:"
            f"{encoded_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "allow"


settings = Settings()
