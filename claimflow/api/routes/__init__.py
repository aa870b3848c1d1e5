"""API routes package: import all routers here for inclusion in the app."""

from claimflow.api.routes.requests import router as requests_router  # noqa: F401
from claimflow.api.routes.assessments import router as assessments_router  # noqa: F401
from claimflow.api.routes.appointments import router as appointments_router  # noqa: F401
