import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "wecom-proxy")

PROXY_PORT = int(os.environ.get("PROXY_PORT", "3120"))
LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")

TARGET_HOST = os.environ.get("TARGET_HOST", "qyapi.weixin.qq.com")
TARGET_PORT = int(os.environ.get("TARGET_PORT", "443"))
# Deadline for an upstream attempt, from connect until response headers
PROXY_TIMEOUT_MS = int(os.environ.get("PROXY_TIMEOUT_MS", "60000"))

# Only requests under this prefix are relayed
FORWARD_PREFIX = "/cgi-bin/"

SHUTDOWN_GRACE_SECONDS = int(os.getenv("SHUTDOWN_GRACE_SECONDS", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
