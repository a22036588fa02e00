from dataclasses import dataclass


@dataclass
class PostgresConfig:
    host: str
    port: int
    username: str
    password: str
    database: str = "postgres"
    pool_size: int = 10
    max_overflow: int = 10
    pool_timeout: int = 30  # seconds
    pool_recycle: int = 3600  # seconds
