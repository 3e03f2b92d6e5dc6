import azure.functions as func

from services.rate_limiter import RequestRateLimiter
from shared.db import init_db

# Initialize the database (creates tables if they don't exist)
init_db()  # runs once when the Functions host imports this module

app = func.FunctionApp()

# One limiter per worker process, shared by every report and territory route.
rate_limiter = RequestRateLimiter.from_settings()

# Import endpoint modules so their routes register with the shared app.
import health_endpoints  # noqa
import reports_endpoints  # noqa
import territory_endpoints  # noqa
