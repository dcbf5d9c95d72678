import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .db import Base, engine
from .errors import AlreadyIssued, EventValidationError, InvalidTransition, NotFound, TicketIdExhausted
from .logging_setup import setup_logging
from .organizer import router as organizer_router
from .participant import router as participant_router

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Ticketdesk", version="1.0.0")
app.include_router(participant_router)
app.include_router(organizer_router)

# Create DB tables (migrations are out of scope)
Base.metadata.create_all(bind=engine)


@app.exception_handler(NotFound)
async def not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(EventValidationError)
async def validation_failed(request: Request, exc: EventValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.message, "field": exc.field})


@app.exception_handler(InvalidTransition)
@app.exception_handler(AlreadyIssued)
async def conflict(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TicketIdExhausted)
@app.exception_handler(SQLAlchemyError)
async def infrastructure_failure(request: Request, exc: Exception):
    logger.exception("request failed path=%s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.get("/health")
def health():
    return {"status": "ok"}
