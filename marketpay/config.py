import os


def database_url(url):
    """Point bare postgres URLs at the psycopg 3 driver."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def _celery_settings(broker_url):
    return {
        "broker_url": broker_url,
        "result_backend": os.environ.get("CELERY_RESULT_BACKEND", broker_url),
        "task_ignore_result": True,
        "timezone": "UTC",
        "enable_utc": True,
    }


class Config:
    SQLALCHEMY_DATABASE_URI = database_url(
        os.environ.get("DATABASE_URL", "sqlite:///marketpay.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Bearer tokens are issued by the auth provider and signed with its JWT secret
    JWT_SECRET_KEY = os.environ.get(
        "SUPABASE_JWT_SECRET", os.environ.get("JWT_SECRET_KEY", "dev-secret")
    )
    JWT_DECODE_AUDIENCE = os.environ.get("JWT_DECODE_AUDIENCE")

    PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY")
    PAYSTACK_PUBLIC_KEY = os.environ.get("PAYSTACK_PUBLIC_KEY")
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "GHS")

    PAYMENT_EXPIRATION_SECONDS = int(os.environ.get("PAYMENT_EXPIRATION_SECONDS", 120))
    PAYMENT_SWEEP_INTERVAL_SECONDS = int(
        os.environ.get("PAYMENT_SWEEP_INTERVAL_SECONDS", 30)
    )
    PROVISIONING_MAX_ATTEMPTS = int(os.environ.get("PROVISIONING_MAX_ATTEMPTS", 5))

    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")
    # Needs a migrations/ directory, see `flask db init`
    AUTO_MIGRATE = os.environ.get("AUTO_MIGRATE", "false").lower() in ("1", "true", "yes")

    CELERY = _celery_settings(
        os.environ.get(
            "CELERY_BROKER_URL", os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        )
    )


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    AUTO_MIGRATE = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    JWT_SECRET_KEY = "test-jwt-secret-with-enough-length-for-hs256"
    JWT_DECODE_AUDIENCE = None
    PAYSTACK_SECRET_KEY = "sk_test_secret"
    PAYSTACK_PUBLIC_KEY = "pk_test_public"
    CORS_ORIGINS = "*"
    CELERY = dict(
        _celery_settings("memory://"),
        result_backend="cache+memory://",
        task_always_eager=True,
        task_eager_propagates=True,
    )


CONFIGS = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config(name):
    try:
        return CONFIGS[name]
    except KeyError:
        raise RuntimeError(f"Unknown configuration '{name}'")
