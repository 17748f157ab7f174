from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    default_worker_count: int = 1
    default_iterations: int = 1000
    default_alpha: float = 0.05
    parallel_backend: str = "process"
    error_policy: str = "raise"
    chunk_size: Optional[int] = None
    mp_start_method: Optional[str] = None
    log_level: str = "WARNING"
    code_version: str = "v1.0.0"

    class Config:
        env_file = ".env"
        env_prefix = "POWERSIM_"


settings = Settings()
