import azure.functions as func
from dotenv import load_dotenv

# Load local .env for dev convenience (local.settings.json is handled by Functions host)
load_dotenv()

from shared.db import init_db  # noqa: E402

# Creates tables (and backfills optional columns) once when the Functions host starts.
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import health_endpoints  # noqa: E402,F401
import credentials_endpoints  # noqa: E402,F401
import leads_endpoints  # noqa: E402,F401
import recordings_endpoints  # noqa: E402,F401
import dialer_endpoints  # noqa: E402,F401
import voice_endpoints  # noqa: E402,F401
