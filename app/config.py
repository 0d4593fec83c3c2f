from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    CRM_API_URL: str = "http://localhost:5000/api"
    CRM_API_TIMEOUT: float = 10.0
    CRM_SERVICE_TOKEN: str = ""
    JWT_SECRET: str = "change-me"
    ALGORITHM: str = "HS256"
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    SEND_RATE_LIMIT_TIMES: int = 10
    SEND_RATE_LIMIT_SECONDS: int = 60
    SCHEDULER_ENABLED: bool = True
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RESET_TIMEOUT: int = 60
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    class Config:
        env_file = ".env"

settings = Settings()
