import logging
import os

# Get log level from environment variable or default to INFO
EGRESSIPAM_LOG_LEVEL = os.environ.get("EGRESSIPAM_LOG_LEVEL", "INFO").upper()
# Get dependencies log level from environment variable or default to WARNING
DEPENDENCIES_LOG_LEVEL = os.environ.get("DEPENDENCIES_LOG_LEVEL", "WARNING").upper()

# Configure logging
logging.basicConfig(
    level=getattr(logging, DEPENDENCIES_LOG_LEVEL, logging.WARNING),  # Set default level for all loggers
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Set specific level for egressipam loggers
egressipam_logger = logging.getLogger("egressipam")
egressipam_logger.setLevel(getattr(logging, EGRESSIPAM_LOG_LEVEL, logging.INFO))

# Namespace association annotations
NAMESPACE_ANNOTATION = "egressip-ipam-operator.redhat-cop.io/egressipam"
NAMESPACE_ASSOCIATION_ANNOTATION = "egressip-ipam-operator.redhat-cop.io/egressips"

# Allocation
IPS_PER_NODE = int(os.environ.get("EGRESSIPAM_IPS_PER_NODE", "1"))
EXTRA_RESERVED_IPS = [ip.strip() for ip in os.environ.get("EGRESSIPAM_RESERVED_IPS", "").split(",") if ip.strip()]

# Writes
MAX_CONCURRENT_WRITES = int(os.environ.get("EGRESSIPAM_MAX_CONCURRENT_WRITES", "0"))

# Scheduling
DEBOUNCE_DELAY_SECONDS = float(os.environ.get("EGRESSIPAM_DEBOUNCE_DELAY_SECONDS", "2.0"))
REQUEUE_DELAY_SECONDS = float(os.environ.get("EGRESSIPAM_REQUEUE_DELAY_SECONDS", "30.0"))
WATCH_RETRY_SECONDS = float(os.environ.get("EGRESSIPAM_WATCH_RETRY_SECONDS", "10.0"))
