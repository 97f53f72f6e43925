import os
from dataclasses import dataclass

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/catalog_db")

# Application Metadata
PROJECT_NAME = "Catalog Notification Outbox Relay"
VERSION = "1.0.0"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Outbox Processor Configuration
PROCESSOR_NAME = os.getenv("PROCESSOR_NAME", "notification-processor")
POLLING_INTERVAL = float(os.getenv("POLLING_INTERVAL", 1))  # Seconds between scans when idle
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", 5))  # Failed deliveries before an event is dead-lettered
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 100))  # Events fetched per tenant scan
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", 1.0))
BACKOFF_MAX_SECONDS = float(os.getenv("BACKOFF_MAX_SECONDS", 60.0))
BACKOFF_JITTER = float(os.getenv("BACKOFF_JITTER", 0.1))  # Fraction of the delay added at random
LEASE_TTL_SECONDS = float(os.getenv("LEASE_TTL_SECONDS", 30.0))
DELIVERY_TIMEOUT_SECONDS = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", 10.0))
MAX_CONCURRENT_PARTITIONS = int(os.getenv("MAX_CONCURRENT_PARTITIONS", 32))

# Hard cap on the serialized event payload. Not configurable.
MAX_EVENT_DATA_BYTES = 1024
MAX_ERROR_LENGTH = 2000

# Delivered event retention
PRUNE_RETENTION_HOURS = int(os.getenv("PRUNE_RETENTION_HOURS", 72))
PRUNE_BATCH_SIZE = int(os.getenv("PRUNE_BATCH_SIZE", 5000))

# Realtime broadcast sink. Falls back to the logging sink when unset.
REALTIME_URL = os.getenv("REALTIME_URL", "")
REALTIME_API_KEY = os.getenv("REALTIME_API_KEY", "")
REALTIME_EVENT_NAME = "cataloging_event"

# Run the processor inside the API process (single-node deployments)
EMBEDDED_PROCESSOR = os.getenv("EMBEDDED_PROCESSOR", "false").lower() == "true"


@dataclass(frozen=True)
class ProcessorPolicy:
    """Retry, batching and lease knobs handed to the OutboxProcessor."""
    max_attempts: int = MAX_ATTEMPTS
    batch_size: int = BATCH_SIZE
    backoff_base: float = BACKOFF_BASE_SECONDS
    backoff_max: float = BACKOFF_MAX_SECONDS
    backoff_jitter: float = BACKOFF_JITTER
    lease_ttl: float = LEASE_TTL_SECONDS
    delivery_timeout: float = DELIVERY_TIMEOUT_SECONDS
    poll_interval: float = POLLING_INTERVAL
    max_concurrent_partitions: int = MAX_CONCURRENT_PARTITIONS

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.lease_ttl <= 0:
            raise ValueError("lease_ttl must be positive")
        if self.delivery_timeout >= self.lease_ttl:
            # A sink call must not be able to outlive the lease it runs under
            raise ValueError("delivery_timeout must be shorter than lease_ttl")

    @classmethod
    def from_env(cls) -> "ProcessorPolicy":
        # Re-read the environment so long-running processes pick up overrides
        return cls(
            max_attempts=int(os.getenv("MAX_ATTEMPTS", MAX_ATTEMPTS)),
            batch_size=int(os.getenv("BATCH_SIZE", BATCH_SIZE)),
            backoff_base=float(os.getenv("BACKOFF_BASE_SECONDS", BACKOFF_BASE_SECONDS)),
            backoff_max=float(os.getenv("BACKOFF_MAX_SECONDS", BACKOFF_MAX_SECONDS)),
            backoff_jitter=float(os.getenv("BACKOFF_JITTER", BACKOFF_JITTER)),
            lease_ttl=float(os.getenv("LEASE_TTL_SECONDS", LEASE_TTL_SECONDS)),
            delivery_timeout=float(os.getenv("DELIVERY_TIMEOUT_SECONDS", DELIVERY_TIMEOUT_SECONDS)),
            poll_interval=float(os.getenv("POLLING_INTERVAL", POLLING_INTERVAL)),
            max_concurrent_partitions=int(os.getenv("MAX_CONCURRENT_PARTITIONS", MAX_CONCURRENT_PARTITIONS)),
        )
