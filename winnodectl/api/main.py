from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from winnodectl.api.middleware import AuthMiddleware
from winnodectl.api.routes import status
from winnodectl.controllers.condition import StatusManager

load_dotenv()


def create_app(status_manager: Optional[StatusManager] = None, api_key: Optional[str] = None) -> FastAPI:
    """Build the status API around the given StatusManager."""
    app = FastAPI(title="winnodectl")
    app.state.status = status_manager or StatusManager()
    app.add_middleware(AuthMiddleware, token=api_key)
    app.include_router(status.router)
    return app


app = create_app()
