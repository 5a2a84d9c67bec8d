# Server Socket
bind = "127.0.0.1:8000"  # Only accessible locally, NGINX will proxy requests

# Worker Settings
# Several door devices scan at once; check-in correctness does not depend on
# them sharing a worker
workers = 4
threads = 4
worker_class = "gthread"

# Security & Performance
timeout = 60
graceful_timeout = 30
keepalive = 5
max_requests = 1000  # Restart workers after processing 1000 requests
max_requests_jitter = 50

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"

# Process Name
proc_name = "gatepass_gunicorn"
