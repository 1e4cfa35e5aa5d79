"""FastAPI dependencies for dependency injection."""

from typing import Annotated

from fastapi import Depends, Request

from bnpl_engine.engine import InstallmentEngine


def get_installment_engine(request: Request) -> InstallmentEngine:
    """Engine built at startup and kept on the application state."""
    return request.app.state.engine


# Type aliases for cleaner dependency injection
Engine = Annotated[InstallmentEngine, Depends(get_installment_engine)]
