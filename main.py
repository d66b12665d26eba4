import os
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from analytics import admin_summary, most_saved_lessons, top_contributors
from auth import FirebaseVerifier, Identity, get_identity, require_admin, require_owner_or_admin
from database import (
    COMMENTS,
    LESSONS,
    REPORTS,
    USERS,
    connect,
    create_document,
    get_db,
    get_documents,
    parse_object_id,
    to_public,
    utcnow,
)
from log_config import configure_logging
from payments import (
    InvalidEvent,
    PaymentError,
    StripeGateway,
    get_payment_gateway,
    reconcile,
)
from schemas import (
    AdminAnalytics,
    CartItem,
    Comment,
    Contributor,
    Lesson,
    LessonReport,
    RoleStatus,
    ToggleRequest,
    ToggleResult,
    User,
)

configure_logging()
logger = structlog.get_logger(__name__)

# fields only the toggle endpoints may change
COUNTED_SETS = {"likes": "likesCount", "favorites": "favoritesCount"}
MAX_TOGGLE_ATTEMPTS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    client, app.state.db = connect(config.DATABASE_URL, config.DATABASE_NAME)
    try:
        app.state.verifier = None
        if config.FB_SERVICE_KEY:
            app.state.verifier = FirebaseVerifier.from_service_key(config.FB_SERVICE_KEY)
        else:
            logger.warning("firebase_not_configured")
        app.state.payments = StripeGateway(
            config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET, config.SITE_DOMAIN
        )
        logger.info("startup_complete", database=config.DATABASE_NAME)
        yield
    finally:
        client.close()
        logger.info("shutdown_complete")


app = FastAPI(title="The Life Journal API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": problems or "Invalid input"})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("database_error", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Database operation failed"})


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logger.error("payment_error", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.get("/", response_class=PlainTextResponse)
def root():
    return "Welcome to The Life Journal!"


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": db.name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
    return response


# Lessons
@app.get("/lessons")
def list_lessons(
    email: Optional[str] = None,
    category: Optional[str] = None,
    emotionalTone: Optional[str] = None,
    privacy: Optional[str] = None,
    limit: int = 0,
    db: Database = Depends(get_db),
):
    filter_query = {}
    if email:
        filter_query["email"] = email
    if privacy:
        filter_query["privacy"] = privacy
    # category and tone widen the result rather than narrow it
    if category and emotionalTone:
        filter_query["$or"] = [{"category": category}, {"emotionalTone": emotionalTone}]
    elif category:
        filter_query["category"] = category
    elif emotionalTone:
        filter_query["emotionalTone"] = emotionalTone
    return get_documents(db, LESSONS, filter_query, limit=limit)


@app.get("/lessons/{lesson_id}")
def get_lesson(lesson_id: str, db: Database = Depends(get_db)):
    obj_id = parse_object_id(lesson_id, "lesson id")
    doc = db[LESSONS].find_one({"_id": obj_id})
    if not doc:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return to_public(doc)


@app.post("/lessons", response_model=dict)
def create_lesson(lesson: Lesson, db: Database = Depends(get_db)):
    data = lesson.model_dump(exclude_none=True)
    # counts start consistent with whatever sets the caller sent
    for set_field, count_field in COUNTED_SETS.items():
        data[set_field] = list(dict.fromkeys(data.get(set_field, [])))
        data[count_field] = len(data[set_field])
    lesson_id = create_document(db, LESSONS, data)
    logger.info("lesson_created", lesson_id=lesson_id, email=data.get("email"))
    return {"id": lesson_id}


@app.put("/lessons/{lesson_id}")
def update_lesson(
    lesson_id: str,
    payload: dict = Body(...),
    identity: Identity = Depends(get_identity),
    db: Database = Depends(get_db),
):
    obj_id = parse_object_id(lesson_id, "lesson id")
    require_owner_or_admin(db, obj_id, identity)
    protected = {"_id", "id", "createdAt", *COUNTED_SETS, *COUNTED_SETS.values()}
    update_data = {k: v for k, v in payload.items() if k not in protected}
    update_data["updatedAt"] = utcnow()
    res = db[LESSONS].update_one({"_id": obj_id}, {"$set": update_data})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Lesson not found")
    logger.info("lesson_updated", lesson_id=lesson_id, by=identity.email)
    return {"matchedCount": res.matched_count, "modifiedCount": res.modified_count}


@app.delete("/lessons/{lesson_id}")
def delete_lesson(
    lesson_id: str,
    identity: Identity = Depends(get_identity),
    db: Database = Depends(get_db),
):
    obj_id = parse_object_id(lesson_id, "lesson id")
    require_owner_or_admin(db, obj_id, identity)
    res = db[LESSONS].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Lesson not found")
    logger.info("lesson_deleted", lesson_id=lesson_id, by=identity.email)
    return {"deletedCount": res.deleted_count}


def toggle_membership(db: Database, lesson_id: str, user_id: str, set_field: str) -> ToggleResult:
    """Flip ``user_id`` in a lesson's set and move its counter in the same update."""
    obj_id = parse_object_id(lesson_id, "lesson id")
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required")
    count_field = COUNTED_SETS[set_field]
    lessons = db[LESSONS]
    for _ in range(MAX_TOGGLE_ATTEMPTS):
        doc = lessons.find_one_and_update(
            {"_id": obj_id, set_field: {"$ne": user_id}},
            {"$addToSet": {set_field: user_id}, "$inc": {count_field: 1}},
            projection={count_field: 1},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return ToggleResult(userId=user_id, active=True, delta=1, count=doc[count_field])
        doc = lessons.find_one_and_update(
            {"_id": obj_id, set_field: user_id},
            {"$pull": {set_field: user_id}, "$inc": {count_field: -1}},
            projection={count_field: 1},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return ToggleResult(userId=user_id, active=False, delta=-1, count=doc[count_field])
        if lessons.find_one({"_id": obj_id}, {"_id": 1}) is None:
            raise HTTPException(status_code=404, detail="Lesson not found")
    # another toggle kept flipping the state between our two updates
    raise HTTPException(status_code=500, detail="Could not update lesson, try again")


@app.patch("/lessons/{lesson_id}/like", response_model=ToggleResult)
def toggle_like(lesson_id: str, body: ToggleRequest, db: Database = Depends(get_db)):
    return toggle_membership(db, lesson_id, body.userId.strip(), "likes")


@app.patch("/lessons/{lesson_id}/favorite", response_model=ToggleResult)
def toggle_favorite(lesson_id: str, body: ToggleRequest, db: Database = Depends(get_db)):
    return toggle_membership(db, lesson_id, body.userId.strip(), "favorites")


@app.post("/lessons/{lesson_id}/report", response_model=dict)
def report_lesson(lesson_id: str, report: LessonReport, db: Database = Depends(get_db)):
    parse_object_id(lesson_id, "lesson id")
    reporter = report.reporterUserId.strip()
    reason = report.reason.strip()
    if not reporter or not reason:
        raise HTTPException(status_code=400, detail="reporterUserId and reason are required")
    report_id = create_document(db, REPORTS, {
        "lessonId": lesson_id,
        "reporterUserId": reporter,
        "reporterEmail": report.reporterEmail,
        "reason": reason,
        "timestamp": utcnow(),
    })
    logger.info("lesson_reported", lesson_id=lesson_id, report_id=report_id)
    return {"id": report_id}


# Users
@app.post("/users", response_model=dict)
def upsert_user(user: User, db: Database = Depends(get_db)):
    data = user.model_dump(exclude_none=True)
    email = data.pop("email")
    for field in ("_id", "id", "role", "paymentStatus", "createdAt", "last_loggedIn"):
        data.pop(field, None)
    try:
        res = _upsert_by_email(db, email, data)
    except DuplicateKeyError:
        # a concurrent first login inserted the user; this now matches it
        res = _upsert_by_email(db, email, data)
    created = res.upserted_id is not None
    if created:
        logger.info("user_created", email=email)
    return {"email": email, "created": created}


def _upsert_by_email(db: Database, email: str, data: dict):
    now = utcnow()
    return db[USERS].update_one(
        {"email": email},
        {
            "$setOnInsert": {**data, "role": "freeUser", "createdAt": now},
            "$set": {"last_loggedIn": now},
        },
        upsert=True,
    )


@app.get("/users/role/{email}", response_model=RoleStatus)
def get_user_role(email: str, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"email": email}, {"role": 1, "paymentStatus": 1}) or {}
    return RoleStatus(
        role=user.get("role") or "freeUser",
        paymentStatus=user.get("paymentStatus") or "Unpaid",
    )


@app.get("/users/favorites/{email}")
def list_user_favorites(email: str, db: Database = Depends(get_db)):
    return get_documents(db, LESSONS, {"favorites": email})


# Comments
@app.post("/comments", response_model=dict)
def create_comment(comment: Comment, db: Database = Depends(get_db)):
    comment_id = create_document(db, COMMENTS, comment.model_dump(exclude_none=True))
    return {"id": comment_id}


@app.get("/comments")
def list_comments(lessonId: Optional[str] = None, db: Database = Depends(get_db)):
    filter_query = {"lessonId": lessonId} if lessonId else {}
    return get_documents(db, COMMENTS, filter_query)


@app.delete("/comments/{comment_id}")
def delete_comment(comment_id: str, db: Database = Depends(get_db)):
    obj_id = parse_object_id(comment_id, "comment id")
    res = db[COMMENTS].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Comment not found")
    return {"deletedCount": res.deleted_count}


# Payments
@app.post("/payment-checkout-session", response_model=dict)
def create_checkout_session(item: CartItem, gateway=Depends(get_payment_gateway)):
    session = gateway.create_session(item)
    logger.info("checkout_session_created", session_id=session.id, email=item.email)
    return {"url": session.url, "id": session.id}


@app.patch("/payment/success", response_model=dict)
def payment_success(
    session_id: str,
    gateway=Depends(get_payment_gateway),
    db: Database = Depends(get_db),
):
    # trusts the caller's session id; the webhook is the authoritative path
    session = gateway.retrieve_session(session_id)
    paid = reconcile(db, session)
    return {"success": paid, "paymentStatus": "Paid" if paid else "Unpaid"}


@app.post("/webhook", response_model=dict)
async def stripe_webhook(
    request: Request,
    gateway=Depends(get_payment_gateway),
    db: Database = Depends(get_db),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = await run_in_threadpool(gateway.parse_event, payload, signature)
    except InvalidEvent as e:
        logger.warning("webhook_rejected", reason=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    if event.session is not None:
        await run_in_threadpool(reconcile, db, event.session)
    return {"received": True}


# Admin
@app.get("/admin/analytics", response_model=AdminAnalytics)
def admin_analytics(identity: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return admin_summary(db)


@app.get("/admin/reports")
def admin_reports(identity: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return get_documents(db, REPORTS)


# Analytics
@app.get("/analytics/top-contributors-week", response_model=List[Contributor])
def top_contributors_week(limit: Optional[int] = Query(None, ge=1), db: Database = Depends(get_db)):
    return top_contributors(db, limit or config.TOP_CONTRIBUTORS_LIMIT)


@app.get("/analytics/most-saved-lessons")
def most_saved(db: Database = Depends(get_db)):
    return most_saved_lessons(db)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
