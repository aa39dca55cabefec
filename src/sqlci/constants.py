"""Default values for SQLCI."""

DEFAULT_IMAGE = "microsoft/mssql-server-windows-developer"
DEFAULT_CONTAINER_PORT = 1433
DEFAULT_ISOLATION = "default"
ISOLATION_MODES = ("default", "process", "hyperv")

DEFAULT_ADMIN_USER = "sa"
DEFAULT_LOGIN_NAME = "ci_user"
DEFAULT_ROLE = "sysadmin"

DEFAULT_MAX_ATTEMPTS = 20
DEFAULT_RETRY_DELAY = 15.0
DEFAULT_PROBE_QUERY = "SELECT 1"
DEFAULT_SQLCMD_PATH = "sqlcmd"

DEFAULT_STOP_TIMEOUT = 30
DEFAULT_COMMAND_TIMEOUT = 120.0

DEFAULT_CONFIG_FILE = ".sqlci.yml"
DEFAULT_HANDLE_FILE = ".sqlci/handle.json"
CONTAINER_NAME_PREFIX = "sqlci"
DEFAULT_CONNECT_HOST = "localhost"
