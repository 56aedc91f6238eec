from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List
from decimal import Decimal
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'clinic_user'
    POSTGRES_PASSWORD: str = 'clinic_pass'
    POSTGRES_DB: str = 'clinic_billing'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Sobrescribe la URL compuesta (ej. sqlite para pruebas)

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # JWT settings (los tokens se emiten en el servicio de autenticación)
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Facturación
    LOCAL_CURRENCY: str = 'DOP'
    SUPPORTED_CURRENCIES: List[str] = ['DOP', 'USD']
    DEFAULT_TAX_RATE: Decimal = Decimal('18')  # ITBIS, en porcentaje
    INVOICE_NUMBER_PREFIX: str = 'FAC'
    QUOTE_NUMBER_PREFIX: str = 'COT'
    DEFAULT_QUOTE_VALIDITY_DAYS: int = 15

    # Comprobantes fiscales (NCF)
    FISCAL_NUMBER_PADDING: int = 8
    SEQUENCE_MAX_RETRIES: int = 5
    SEQUENCE_LOW_STOCK_THRESHOLD: int = 50

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("LOCAL_CURRENCY", "INVOICE_NUMBER_PREFIX", "QUOTE_NUMBER_PREFIX", mode="before")
    @classmethod
    def strip_upper(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("DEFAULT_TAX_RATE")
    @classmethod
    def validate_tax_rate(cls, v):
        if v < 0 or v > 100:
            raise ValueError('La tasa de impuesto debe estar entre 0 y 100')
        return v

settings = Settings()
