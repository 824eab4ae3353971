import os

DEFAULT_API_URL = os.getenv("CSM_API_URL", "https://api-gw-service-nmn.local")
SLS_API_PATH = "/apis/sls/v1"
BSS_API_PATH = "/apis/bss/boot/v1"

# seconds, applied to every request made by the service clients
DEFAULT_HTTP_TIMEOUT = 30

# networks that receive per-network --<name>-cidr6/--<name>-gateway6 flags
NETWORKS_TO_PATCH = ["CHN", "CMN"]
DEFAULT_SUBNETS_TO_PATCH = ["network_hardware", "bootstrap_dhcp"]

# Subnets which share their parent network's block instead of getting their own prefix. This mirrors the
# IPv4 layout where these subnets were given the network's netmask and gateway to avoid switch config changes.
DEFAULT_SUPERNET_SUBNETS = [
    "bootstrap_dhcp",
    "network_hardware",
    "can_metallb_static_pool",
    "can_metallb_address_pool",
]

RUN_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

EXIT_OK = 0
EXIT_DISCOVERY_FAILED = 1
EXIT_PLANNING_FAILED = 2
EXIT_COMMIT_FAILED = 3
EXIT_INVALID_ARGS = 4
