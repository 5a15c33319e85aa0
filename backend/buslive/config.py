from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    kmb_base_url: str = "https://data.etabus.gov.hk/v1/transport/kmb"
    citybus_base_url: str = "https://rt.data.gov.hk/v1/transport/citybus-nwfb"
    lrt_base_url: str = "https://rt.data.gov.hk/v1/transport/mtr/lrt"
    poll_interval_seconds: int = 5
    request_timeout_seconds: float = 15.0
    max_retries: int = 2
    max_routes_listed: int = 500
    default_operator: str = "kmb"
    estimated_min_vehicles: int = 1
    estimated_max_vehicles: int = 6

    model_config = {"env_prefix": "", "case_sensitive": False}


settings = Settings()
