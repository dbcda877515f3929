"""Default settings for typedflow.

Maps to keys in config.yaml. Override via the user config file.
"""

from pathlib import Path

from platformdirs import user_config_dir

# Platform-appropriate config directory (resolved by platformdirs)
config_dir = Path(user_config_dir("typedflow"))
config_file = config_dir / "config.yaml"

# Environment selection ("dev" or "prod"); the env var wins over the file
env = "prod"
env_var = "TYPEDFLOW_ENV"

# Server defaults
server_host = "127.0.0.1"
server_port = 3400
server_path_prefix = ""
server_run_in_env = "prod"
server_body_limit = 100 * 1024  # bytes

# Number of ports probed above the configured one in dev
port_probe_range = 100
