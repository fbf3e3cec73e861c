import logging
import os
from typing import Any, Type

from bson.errors import BSONError
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from database import Database, LOANS, NOTIFICATIONS, USERS
from schemas import BudgetUpdate, Loan, Notification, RankProfitUpdate, Record, User

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MAX_BODY_BYTES = int(os.getenv("MAX_BODY_BYTES", str(50 * 1024 * 1024)))

app = FastAPI(title="Loan Sync API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class BodySizeLimitMiddleware:
    """Rejects request bodies larger than ``MAX_BODY_BYTES`` with 413, both
    when declared in ``Content-Length`` and when streamed without one."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        limit = MAX_BODY_BYTES
        length = dict(scope["headers"]).get(b"content-length", b"")
        if length.isdigit() and int(length) > limit:
            response = JSONResponse(status_code=413, content={"error": "Payload Too Large"})
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise HTTPException(413, "Payload Too Large")
            return message

        await self.app(scope, limited_receive, send)


app.add_middleware(BodySizeLimitMiddleware)


# Error rendering

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"error": "Invalid data", "details": jsonable_errors(exc.errors())})


@app.exception_handler(PyMongoError)
@app.exception_handler(BSONError)
@app.exception_handler(OverflowError)
async def store_error(request: Request, exc: Exception):
    logger.error("Store error in %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error("Unhandled error in %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


def jsonable_errors(errors):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


# Connection

def get_database() -> Database:
    database.db.ensure_connected()
    return database.db


# Sync helpers

def parse_records(payload: Any, model: Type[Record]) -> list:
    if not isinstance(payload, list):
        raise HTTPException(400, "Invalid data")
    records = []
    errors = []
    for index, item in enumerate(payload):
        try:
            records.append(model.model_validate(item))
        except ValidationError as e:
            errors.extend({**err, "loc": (index, *err["loc"])} for err in e.errors())
    if errors:
        raise HTTPException(400, {"error": "Invalid data", "details": jsonable_errors(errors)})
    return records


def sync_collection(payload: Any, model: Type[Record], collection: str, store: Database) -> dict:
    records = parse_records(payload, model)
    count = database.upsert_documents(store, collection, records)
    logger.debug("Upserted %d record(s) into %s", count, collection)
    return {"success": True}


# Routes

@app.get("/")
def read_root():
    return {"message": "Loan Sync API Running"}


@app.get("/api/db-status")
def db_status(store: Database = Depends(get_database)):
    return store.status()


@app.get("/api/data")
def get_data(store: Database = Depends(get_database)):
    return database.load_snapshot(store)


@app.post("/api/users")
def sync_users(payload: Any = Body(None), store: Database = Depends(get_database)):
    return sync_collection(payload, User, USERS, store)


@app.post("/api/loans")
def sync_loans(payload: Any = Body(None), store: Database = Depends(get_database)):
    return sync_collection(payload, Loan, LOANS, store)


@app.post("/api/notifications")
def sync_notifications(payload: Any = Body(None), store: Database = Depends(get_database)):
    return sync_collection(payload, Notification, NOTIFICATIONS, store)


@app.post("/api/budget")
def update_budget(payload: BudgetUpdate, store: Database = Depends(get_database)):
    database.update_system_field(store, "budget", payload.budget)
    return {"success": True}


@app.post("/api/rankProfit")
def update_rank_profit(payload: RankProfitUpdate, store: Database = Depends(get_database)):
    database.update_system_field(store, "rankProfit", payload.rank_profit)
    return {"success": True}


@app.delete("/api/users/{user_id}")
def remove_user(user_id: str, store: Database = Depends(get_database)):
    deleted = database.delete_user_cascade(store, user_id)
    logger.info("Deleted user %s with %d loan(s) and %d notification(s)",
                user_id, deleted["loans"], deleted["notifications"])
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
