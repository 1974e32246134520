API = "api"
FRONTEND = "frontend"

ROUTE_TABLE = [
    {
        "prefix": "/api",
        "upstream": API,
        "strip_prefix": True,
        "cors": True,
    },
    {
        "prefix": "/",
        "upstream": FRONTEND,
    },
]

ACME_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"
HEALTH_PATH = "/health"
