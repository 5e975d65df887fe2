from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import lru_cache
import logging
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from config import settings, setup_logging
from database import client, db
from errors import LendingError
from events import EventDispatcher, LogNotifier, MongoAuditSink
from loans import LoanService
from schemas import Caller, LoanStatus, Role

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


# Request Models
class CreateLoan(BaseModel):
    book_id: str = Field(..., description="Book to borrow")
    copy_id: Optional[str] = Field(None, description="Specific copy (auto-selected if omitted)")


class ApproveRejectLoan(BaseModel):
    action: Literal["approve", "reject"]
    copy_id: Optional[str] = Field(None, description="Copy to assign (required for approve)")
    rejection_reason: Optional[str] = Field(None, min_length=1, max_length=500)

    @model_validator(mode="after")
    def copy_required_for_approve(self):
        if self.action == "approve" and not self.copy_id:
            raise ValueError("Copy ID is required when approving a loan")
        return self


SortField = Literal["due_date", "borrowed_at", "created_at", "status"]
SortOrder = Literal["asc", "desc"]


# Dependencies
def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    """Identity is resolved upstream and forwarded in these headers."""
    if not x_user_id or not x_user_role:
        raise HTTPException(401, "Authentication required")
    try:
        role = Role(x_user_role.upper())
    except ValueError:
        raise HTTPException(401, "Unknown role")
    return Caller(id=x_user_id, role=role)


@lru_cache(maxsize=1)
def get_loan_service() -> LoanService:
    executor = ThreadPoolExecutor(settings.notification_workers) if settings.notification_workers else None
    dispatcher = EventDispatcher(MongoAuditSink(db), LogNotifier(db), executor)
    return LoanService(db, dispatcher=dispatcher, mongo_client=client, transactional=settings.use_transactions)


app = FastAPI(title="Library Lending API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LendingError)
def lending_error_handler(request: Request, exc: LendingError):
    if exc.status_code >= 500:
        logger.error("%s %s refused: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.get("/")
def read_root():
    return {"message": "Library Lending API is running"}


# Loans Endpoints
@app.get("/api/loans")
def list_loans(
    status: Optional[LoanStatus] = None,
    member_id: Optional[str] = None,
    book_id: Optional[str] = None,
    due_before: Optional[datetime] = None,
    due_after: Optional[datetime] = None,
    sort_by: SortField = "due_date",
    sort_order: SortOrder = "asc",
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    service: LoanService = Depends(get_loan_service),
):
    return service.list_loans(caller, status=status, member_id=member_id, book_id=book_id,
                              due_before=due_before, due_after=due_after, sort_by=sort_by,
                              sort_order=sort_order, page=page, page_size=page_size)


@app.post("/api/loans", status_code=201)
def create_loan(payload: CreateLoan, caller: Caller = Depends(get_caller),
                service: LoanService = Depends(get_loan_service)):
    return service.create_loan(caller, payload.book_id, payload.copy_id)


@app.post("/api/loans/sweep-overdue")
def sweep_overdue(caller: Caller = Depends(get_caller), service: LoanService = Depends(get_loan_service)):
    return service.sweep_overdue(caller)


@app.get("/api/loans/{loan_id}")
def get_loan(loan_id: str, caller: Caller = Depends(get_caller), service: LoanService = Depends(get_loan_service)):
    return service.get_loan(caller, loan_id)


@app.post("/api/loans/{loan_id}/approve-reject")
def approve_reject_loan(loan_id: str, payload: ApproveRejectLoan, caller: Caller = Depends(get_caller),
                        service: LoanService = Depends(get_loan_service)):
    return service.approve_or_reject(caller, loan_id, payload.action, payload.copy_id, payload.rejection_reason)


@app.post("/api/loans/{loan_id}/checkout")
def checkout_loan(loan_id: str, caller: Caller = Depends(get_caller),
                  service: LoanService = Depends(get_loan_service)):
    return service.checkout_loan(caller, loan_id)


@app.post("/api/loans/{loan_id}/renew")
def renew_loan(loan_id: str, caller: Caller = Depends(get_caller), service: LoanService = Depends(get_loan_service)):
    return service.renew_loan(caller, loan_id)


@app.post("/api/loans/{loan_id}/cancel")
def cancel_loan(loan_id: str, caller: Caller = Depends(get_caller), service: LoanService = Depends(get_loan_service)):
    return service.cancel_loan(caller, loan_id)


@app.post("/api/loans/{loan_id}/return")
def return_loan(loan_id: str, caller: Caller = Depends(get_caller), service: LoanService = Depends(get_loan_service)):
    return service.return_loan(caller, loan_id)


@app.get("/api/my-loans")
def list_my_loans(
    status: Optional[LoanStatus] = None,
    sort_by: SortField = "due_date",
    sort_order: SortOrder = "asc",
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    service: LoanService = Depends(get_loan_service),
):
    return service.list_member_loans(caller, status=status, sort_by=sort_by, sort_order=sort_order,
                                     page=page, page_size=page_size)


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": settings.database_name,
        "connection_status": "Not Connected",
        "collections": [],
        "policy": "❌ Missing",
    }
    try:
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
        if db["setting"].find_one({}) is not None:
            response["policy"] = "✅ Configured"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
