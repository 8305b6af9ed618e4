import logging
import math
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from clustering import attach_on_create, enrich_for_listing, get_cluster, run_maintenance_sweep
from database import create_document, ensure_indexes, get_db
from schemas import SEVERITY_RANK, Category, Location, Role, Severity, Status
from schemas import Report as ReportSchema

APP_NAME = "Community Era API"
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(60 * 24 * 14)))  # 14 days
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("community_era")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = get_db()
    if database is not None:
        ensure_indexes(database)
        logger.info("Indexes ensured on %s", database.name)
    else:
        logger.warning("DATABASE_URL is not set; database routes will fail")
    yield


app = FastAPI(title=APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PyMongoError)
async def database_exception_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# ---------- Helpers ----------

def require_db(database=Depends(get_db)):
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database


def parse_object_id(value: str, what: str = "report") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {what} id")


def serialize_report(doc: dict) -> dict:
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    parent = out.get("parentReport")
    out["parentReport"] = str(parent) if parent is not None else None
    out.pop("severityRank", None)
    return out


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "username": user.get("username"),
        "email": user.get("email"),
        "role": user.get("role", Role.user.value),
        "is_active": user.get("is_active", True),
        "profileImage": user.get("profileImage"),
    }


# ---------- Auth Helpers ----------

def create_token(email: str, role: str):
    payload = {
        "sub": email,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def verify_token(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split(" ", 1)
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"email": data.get("sub"), "role": data.get("role")}


def current_user(claims=Depends(verify_token), database=Depends(require_db)):
    user = database["user"].find_one({"email": claims["email"]})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")
    return user


def require_admin(user=Depends(current_user)):
    if user.get("role") != Role.admin.value:
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def load_owned_report(report_id: str, user: dict, database) -> dict:
    oid = parse_object_id(report_id)
    report = database["report"].find_one({"_id": oid})
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    if user.get("role") != Role.admin.value and report.get("reportedBy") != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Not authorized")
    return report


def withdraw_vote(database, report_id: ObjectId, user_id: str) -> None:
    # single write keeps votes and voters in step; votes never drops below 0
    database["report"].update_one(
        {"_id": report_id, "votes": {"$gt": 0}},
        {"$inc": {"votes": -1}, "$pull": {"voters": user_id}},
    )


def delete_user_account(database, user: dict) -> None:
    """Remove a user and take back every vote they cast."""
    user_id = str(user["_id"])
    for vote in list(database["vote"].find({"user": user_id})):
        withdraw_vote(database, vote["report"], user_id)
    database["vote"].delete_many({"user": user_id})
    database["user"].delete_one({"_id": user["_id"]})


# ---------- Models for requests ----------
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ReportUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=5)
    description: Optional[str] = Field(None, min_length=10)
    category: Optional[Category] = None
    severity: Optional[Severity] = None
    status: Optional[Status] = None
    location: Optional[Location] = None
    images: Optional[List[str]] = None


class VoteRequest(BaseModel):
    reportId: str


class ProfileUpdate(BaseModel):
    username: str = Field(..., min_length=3)
    profileImage: Optional[str] = None


class RoleUpdate(BaseModel):
    role: str


class ActiveUpdate(BaseModel):
    is_active: bool


# ---------- Basic routes ----------
@app.get("/")
def root():
    return {"message": f"{APP_NAME} running"}


@app.get("/health")
def health(database=Depends(get_db)):
    info = {
        "backend": "running",
        "database": "disconnected",
        "collections": [],
    }
    try:
        if database is not None:
            info["database"] = "connected"
            info["collections"] = database.list_collection_names()[:10]
    except PyMongoError as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


# ---------- Auth endpoints ----------
@app.post("/auth/register", status_code=201)
def register(req: RegisterRequest, database=Depends(require_db)):
    existing = database["user"].find_one({"$or": [{"email": req.email}, {"username": req.username}]})
    if existing:
        raise HTTPException(status_code=400, detail="Email or username already registered")

    user_doc = {
        "username": req.username,
        "email": req.email,
        "role": Role.user.value,
        "password_hash": pwd_context.hash(req.password),
        "is_active": True,
    }
    create_document(database, "user", user_doc)

    token = create_token(req.email, user_doc["role"])
    return {"token": token, "user": public_user(user_doc)}


@app.post("/auth/login")
def login(req: LoginRequest, database=Depends(require_db)):
    user = database["user"].find_one({"email": req.email})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not pwd_context.verify(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")

    token = create_token(user["email"], user.get("role", Role.user.value))
    return {"token": token, "user": public_user(user)}


@app.get("/me")
def me(user=Depends(current_user)):
    return public_user(user)


@app.get("/profile-stats")
def profile_stats(user=Depends(current_user), database=Depends(require_db)):
    reports = database["report"]
    owner = str(user["_id"])

    total = reports.count_documents({"reportedBy": owner})
    resolved = reports.count_documents({"reportedBy": owner, "status": Status.resolved.value})
    impact = list(reports.aggregate([
        {"$match": {"reportedBy": owner}},
        {"$group": {"_id": None, "votes": {"$sum": "$votes"}}},
    ]))
    recent = reports.find(
        {"reportedBy": owner},
        {"title": 1, "status": 1, "category": 1, "votes": 1, "parentReport": 1, "createdAt": 1},
    ).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]).limit(5)

    return {
        "totalReports": total,
        "resolvedReports": resolved,
        "impactScore": impact[0]["votes"] if impact else 0,
        "recentActivity": [serialize_report(r) for r in recent],
    }


@app.put("/profile")
def update_profile(body: ProfileUpdate, user=Depends(current_user), database=Depends(require_db)):
    taken = database["user"].find_one({"username": body.username, "_id": {"$ne": user["_id"]}})
    if taken:
        raise HTTPException(status_code=400, detail="Username already taken")

    changes = {"username": body.username, "updatedAt": datetime.now(timezone.utc)}
    if body.profileImage is not None:
        changes["profileImage"] = body.profileImage

    updated = database["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Profile updated successfully", "user": public_user(updated)}


@app.delete("/me")
def delete_me(user=Depends(current_user), database=Depends(require_db)):
    # reports stay behind; only the account and its votes go
    delete_user_account(database, user)
    logger.info("Account %s deleted by its owner", user.get("email"))
    return {"message": "Account deleted successfully"}


# ---------- Report endpoints ----------

SORT_ORDERS = {
    "votes": [("votes", DESCENDING), ("_id", DESCENDING)],
    "date": [("createdAt", DESCENDING), ("_id", DESCENDING)],
    "severity": [("severityRank", DESCENDING), ("createdAt", DESCENDING), ("_id", DESCENDING)],
}
DEFAULT_SORT = [("votes", DESCENDING), ("createdAt", DESCENDING), ("_id", DESCENDING)]


@app.get("/reports")
def list_reports(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[Category] = None,
    status: Optional[Status] = None,
    sort: Optional[Literal["votes", "date", "severity"]] = None,
    database=Depends(require_db),
):
    # clustered children are folded into their root's totals
    query = {"parentReport": None}
    if category:
        query["category"] = category.value
    if status:
        query["status"] = status.value

    reports = database["report"]
    skip = (page - 1) * limit
    roots = list(reports.find(query).sort(SORT_ORDERS.get(sort, DEFAULT_SORT)).skip(skip).limit(limit))
    total = reports.count_documents(query)

    enriched = enrich_for_listing(reports, roots)
    return {
        "reports": [serialize_report(r) for r in enriched],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@app.get("/reports/{report_id}")
def get_report(report_id: str, database=Depends(require_db)):
    report = database["report"].find_one({"_id": parse_object_id(report_id)})
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return serialize_report(report)


@app.get("/reports/{report_id}/cluster")
def get_report_cluster(report_id: str, database=Depends(require_db)):
    cluster = get_cluster(database["report"], parse_object_id(report_id))
    if cluster is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return {
        "root": serialize_report(cluster["root"]),
        "children": [serialize_report(c) for c in cluster["children"]],
        "clusterCount": 1 + len(cluster["children"]),
    }


@app.post("/reports", status_code=201)
def create_report(report: ReportSchema, user=Depends(current_user), database=Depends(require_db)):
    now = datetime.now(timezone.utc)
    data = report.model_dump(mode="json")
    data.update({
        "severityRank": SEVERITY_RANK[data["severity"]],
        "reportedBy": str(user["_id"]),
        "votes": 0,
        "voters": [],
        "createdAt": now,
        "updatedAt": now,
    })

    doc = attach_on_create(database["report"], data)
    return serialize_report(doc)


@app.patch("/reports/{report_id}")
def update_report(report_id: str, body: ReportUpdate, user=Depends(current_user), database=Depends(require_db)):
    report = load_owned_report(report_id, user, database)

    changes = body.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    if "severity" in changes:
        changes["severityRank"] = SEVERITY_RANK[changes["severity"]]
    changes["updatedAt"] = datetime.now(timezone.utc)

    updated = database["report"].find_one_and_update(
        {"_id": report["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return serialize_report(updated)


@app.delete("/reports/{report_id}")
def delete_report(report_id: str, user=Depends(current_user), database=Depends(require_db)):
    report = load_owned_report(report_id, user, database)

    res = database["report"].delete_one({"_id": report["_id"]})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Report not found")
    return {"ok": True}


# ---------- Vote endpoints ----------
@app.post("/votes", status_code=201)
def cast_vote(body: VoteRequest, user=Depends(current_user), database=Depends(require_db)):
    oid = parse_object_id(body.reportId)
    if not database["report"].find_one({"_id": oid}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Report not found")

    user_id = str(user["_id"])
    if database["vote"].find_one({"report": oid, "user": user_id}):
        raise HTTPException(status_code=409, detail="Already voted on this report")

    try:
        create_document(database, "vote", {"report": oid, "user": user_id})
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Already voted on this report")

    database["report"].update_one(
        {"_id": oid},
        {"$inc": {"votes": 1}, "$addToSet": {"voters": user_id}},
    )
    return {"message": "Vote recorded"}


@app.delete("/votes/{report_id}")
def remove_vote(report_id: str, user=Depends(current_user), database=Depends(require_db)):
    oid = parse_object_id(report_id)
    user_id = str(user["_id"])

    vote = database["vote"].find_one_and_delete({"report": oid, "user": user_id})
    if not vote:
        raise HTTPException(status_code=404, detail="Vote not found")

    withdraw_vote(database, oid, user_id)
    return {"message": "Vote removed"}


@app.get("/votes/check/{report_id}")
def check_vote(report_id: str, user=Depends(current_user), database=Depends(require_db)):
    vote = database["vote"].find_one({"report": parse_object_id(report_id), "user": str(user["_id"])})
    return {"hasVoted": vote is not None}


# ---------- Admin endpoints ----------
@app.post("/admin/clusters/maintenance")
def cluster_maintenance(admin=Depends(require_admin), database=Depends(require_db)):
    logger.info("Cluster sweep requested by %s", admin.get("email"))
    result = run_maintenance_sweep(database["report"])
    return {
        "mergedCount": result.merged_count,
        "rootsScanned": result.roots_scanned,
        "failedCount": result.failed_count,
    }


def load_user(user_id: str, database) -> dict:
    target = database["user"].find_one({"_id": parse_object_id(user_id, "user")})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


@app.get("/admin/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    admin=Depends(require_admin),
    database=Depends(require_db),
):
    query = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"username": pattern}, {"email": pattern}]

    users = database["user"]
    skip = (page - 1) * limit
    found = list(
        users.find(query)
        .sort([("lastActive", DESCENDING), ("createdAt", DESCENDING), ("_id", DESCENDING)])
        .skip(skip)
        .limit(limit)
    )
    total = users.count_documents(query)
    return {
        "users": [public_user(u) for u in found],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


def _set_user_fields(target: dict, changes: dict, database) -> dict:
    changes["updatedAt"] = datetime.now(timezone.utc)
    updated = database["user"].find_one_and_update(
        {"_id": target["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(updated)


@app.patch("/admin/users/{user_id}/role")
def change_user_role(user_id: str, body: RoleUpdate, admin=Depends(require_admin), database=Depends(require_db)):
    if body.role not in [r.value for r in Role]:
        raise HTTPException(status_code=400, detail="Invalid role")
    target = load_user(user_id, database)
    logger.info("%s set role of %s to %s", admin.get("email"), target.get("email"), body.role)
    return {"message": "User role updated", "user": _set_user_fields(target, {"role": body.role}, database)}


@app.patch("/admin/users/{user_id}/make-admin")
def make_admin(user_id: str, admin=Depends(require_admin), database=Depends(require_db)):
    target = load_user(user_id, database)
    logger.info("%s promoted %s to admin", admin.get("email"), target.get("email"))
    return {"message": "User promoted to admin", "user": _set_user_fields(target, {"role": Role.admin.value}, database)}


@app.patch("/admin/users/{user_id}/active")
def set_user_active(user_id: str, body: ActiveUpdate, admin=Depends(require_admin), database=Depends(require_db)):
    target = load_user(user_id, database)
    if target["_id"] == admin["_id"] and not body.is_active:
        raise HTTPException(status_code=400, detail="Cannot disable yourself")
    logger.info("%s set is_active=%s on %s", admin.get("email"), body.is_active, target.get("email"))
    return {"message": "User status updated", "user": _set_user_fields(target, {"is_active": body.is_active}, database)}


@app.delete("/admin/users/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin), database=Depends(require_db)):
    target = load_user(user_id, database)
    if target["_id"] == admin["_id"]:
        raise HTTPException(status_code=400, detail="Cannot delete yourself")

    delete_user_account(database, target)
    logger.info("%s deleted user %s", admin.get("email"), target.get("email"))
    return {"message": "User deleted successfully"}
