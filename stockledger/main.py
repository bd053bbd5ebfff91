from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stockledger.api.routes import admin
from stockledger.core.config import get_settings
from stockledger.core.errors import StockLedgerError
from stockledger.core.logging import configure_logging

settings = get_settings()
configure_logging()
app = FastAPI(title=settings.app_name)


@app.exception_handler(RequestValidationError)
def request_validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"code": "validation_error", "message": "Invalid request", "details": exc.errors()})


@app.exception_handler(StockLedgerError)
def stockledger_exception_handler(_: Request, exc: StockLedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_api_error().to_dict()})


app.include_router(admin.router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
