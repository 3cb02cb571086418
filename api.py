import csv
import io
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from config import settings
from librarian.forms import DuplicateRecordError, ValidationError
from librarian.library import (
    BOOK_EXPORT_FIELDS,
    BORROWER_EXPORT_FIELDS,
    Library,
    create_identity_provider,
    create_store,
)
from librarian.models import NotFound, UserContext
from librarian.query import BookQuery, BorrowerQuery, paginate, use_system_collation
from librarian.resolver import resolve_borrowers
from librarian.services.http_client import cleanup_http_client
from librarian.services.identity import (
    IdentityProvider,
    IdentityServiceError,
    NotAuthenticatedError,
    require_user,
)
from librarian.store import GENERIC_ERROR_MESSAGE, RecordStore, StoreError

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)
use_system_collation()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        await cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")
bearer_scheme = HTTPBearer(auto_error=False)


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the API key on write endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def _token(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    return credentials.credentials if credentials else None


_local_store: Optional[RecordStore] = None


def get_store(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> RecordStore:
    """Record store for this request.

    The hosted store is opened per request with the caller's token; the local
    SQLite store is shared.
    """
    global _local_store
    if settings.store_backend == "firestore":
        return create_store(id_token=_token(credentials))
    if _local_store is None:
        _local_store = create_store()
    return _local_store


def get_identity_provider(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> IdentityProvider:
    return create_identity_provider(_token(credentials))


async def get_user(provider: IdentityProvider = Depends(get_identity_provider)) -> UserContext:
    try:
        return await require_user(provider, require_verified=settings.require_verified_email)
    except NotAuthenticatedError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except IdentityServiceError as e:
        logger.error(f"Identity lookup failed: {e}")
        raise HTTPException(status_code=502, detail=GENERIC_ERROR_MESSAGE)


async def get_library(
    store: RecordStore = Depends(get_store),
    user: UserContext = Depends(get_user),
) -> Library:
    """Per-request library with a fresh snapshot of the user's collections."""
    try:
        return await Library.open(store, user)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=e.message)


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    category: List[str] = []
    collection_name: str | None = None
    add_date: str | None = None
    last_modified: str | None = None


class BookCreateModel(BaseModel):
    title: str = Field(description="Book title")
    author: str = Field(description="Book author")
    category: List[str] = Field(default_factory=list, description="One or more categories")
    collection_name: str | None = None
    add_date: datetime | None = Field(default=None, description="Defaults to now")


class UpdateBookModel(BaseModel):
    title: str | None = None
    author: str | None = None
    category: List[str] | None = None
    collection_name: str | None = None
    add_date: datetime | None = None


class ResolvedBookModel(BaseModel):
    id: str
    title: str | None = None
    author: str | None = None
    status: str


class BorrowerModel(BaseModel):
    id: str
    name: str
    borrowed_books: List[str] = []
    borrow_date: str | None = None
    books: List[ResolvedBookModel] = []


class BorrowerCreateModel(BaseModel):
    name: str
    borrowed_books: List[str] = Field(default_factory=list, description="Book ids")
    borrow_date: datetime | None = Field(default=None, description="Defaults to now")


class UpdateBorrowerModel(BaseModel):
    name: str | None = None
    borrowed_books: List[str] | None = None
    borrow_date: datetime | None = None


class BulkDeleteModel(BaseModel):
    ids: List[str] = Field(min_length=1)


class LogModel(BaseModel):
    id: str | None = None
    type: str
    book_id: str | None = None
    borrower_id: str | None = None
    details: str = ""
    timestamp: str | None = None


class StatsModel(BaseModel):
    total_books: int
    total_borrowers: int
    total_logs: int
    active_borrowers: int
    borrowed_books: int
    unavailable_references: int
    unique_authors: int
    most_common_author: str | None = None
    books_by_category: Dict[str, int]
    books_by_author: Dict[str, int]
    recent_additions: List[BookModel]


class FacetsModel(BaseModel):
    authors: List[str]
    categories: List[str]
    collections: List[str]


# --- Helpers ---
async def _submit(library: Library, form) -> Any:
    """Submit a form and translate its failures into HTTP errors."""
    try:
        return await library.submit(form)
    except DuplicateRecordError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=e.message)


def _resolved_borrower_model(library: Library, borrower) -> BorrowerModel:
    resolved = resolve_borrowers([borrower], library.index)[0]
    return BorrowerModel(**resolved.to_dict())


def _export_filename(extension: str) -> str:
    return f"library_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.{extension}"


# --- Health ---
@app.get("/")
def root():
    return {"name": settings.app_name, "version": settings.app_version, "docs": "/docs"}


@app.get("/health")
async def health():
    """Lightweight health endpoint; does not touch the record store."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": settings.store_backend,
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    response: Response,
    q: Optional[str] = Query(None, description="Search in title and author"),
    author: Optional[List[str]] = Query(None, description="Exact author, repeatable"),
    category: Optional[List[str]] = Query(None, description="Any of these categories, repeatable"),
    collection: Optional[List[str]] = Query(None, description="Exact collection name, repeatable"),
    sort_by: str = Query("title", description="title|author|collection_name|add_date|last_modified"),
    order: str = Query("asc", description="asc|desc"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
    library: Library = Depends(get_library),
):
    """Filtered, sorted and paginated list of the user's books."""
    query = BookQuery(search=q or "", authors=author, categories=category, collections=collection,
                      sort_by=sort_by, order=order)
    try:
        books = library.query_books(query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    page = paginate(books, offset, limit)
    response.headers["X-Total-Count"] = str(page.total)
    return [BookModel(**b.to_dict()) for b in page.items]


@app.post("/books/bulk-delete", dependencies=[Depends(get_api_key)])
async def bulk_delete_books(payload: BulkDeleteModel, library: Library = Depends(get_library)):
    """Delete the given books one after another, stopping at the first failure."""
    result = await library.delete_books(payload.ids)
    return JSONResponse(status_code=200 if result.ok else 502, content=result.to_dict())


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, library: Library = Depends(get_library)):
    found = library.get_book(book_id)
    if isinstance(found, NotFound):
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**found.record.to_dict())


@app.post("/books", response_model=BookModel, dependencies=[Depends(get_api_key)])
async def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    """Add a book. Title and author together must be unique."""
    form = library.book_form()
    form.stage(**payload.model_dump())
    book = await _submit(library, form)
    return BookModel(**book.to_dict())


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
async def update_book(book_id: str, update: UpdateBookModel, library: Library = Depends(get_library)):
    """Update the given fields of a book; omitted fields keep their value."""
    changes = update.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    found = library.get_book(book_id)
    if isinstance(found, NotFound):
        raise HTTPException(status_code=404, detail="Book not found.")
    form = library.book_form(found.record)
    form.stage(**changes)
    book = await _submit(library, form)
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
async def delete_book(book_id: str, library: Library = Depends(get_library)):
    if isinstance(library.get_book(book_id), NotFound):
        raise HTTPException(status_code=404, detail="Book not found.")
    result = await library.delete_books([book_id])
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    return {"message": "Book removed."}


# --- Borrowers ---
@app.get("/borrowers", response_model=List[BorrowerModel])
def get_borrowers(
    response: Response,
    q: Optional[str] = Query(None, description="Search in borrower name"),
    with_books_only: bool = Query(False, description="Only borrowers holding books"),
    sort_by: str = Query("name", description="name|borrow_date|borrowed_count"),
    order: str = Query("asc", description="asc|desc"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
    library: Library = Depends(get_library),
):
    """Borrowers with their borrowed books resolved; missing books show as unavailable."""
    query = BorrowerQuery(search=q or "", with_books_only=with_books_only, sort_by=sort_by, order=order)
    try:
        resolved = library.resolved_borrowers(query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    page = paginate(resolved, offset, limit)
    response.headers["X-Total-Count"] = str(page.total)
    return [BorrowerModel(**r.to_dict()) for r in page.items]


@app.post("/borrowers/bulk-delete", dependencies=[Depends(get_api_key)])
async def bulk_delete_borrowers(payload: BulkDeleteModel, library: Library = Depends(get_library)):
    result = await library.delete_borrowers(payload.ids)
    return JSONResponse(status_code=200 if result.ok else 502, content=result.to_dict())


@app.get("/borrowers/{borrower_id}", response_model=BorrowerModel)
def get_borrower(borrower_id: str, library: Library = Depends(get_library)):
    found = library.get_borrower(borrower_id)
    if isinstance(found, NotFound):
        raise HTTPException(status_code=404, detail="Borrower not found.")
    return _resolved_borrower_model(library, found.record)


@app.post("/borrowers", response_model=BorrowerModel, dependencies=[Depends(get_api_key)])
async def create_borrower(payload: BorrowerCreateModel, library: Library = Depends(get_library)):
    """Add a borrower. Names must be unique."""
    form = library.borrower_form()
    changes = payload.model_dump(exclude_unset=True)
    form.stage(**changes)
    borrower = await _submit(library, form)
    return _resolved_borrower_model(library, borrower)


@app.put("/borrowers/{borrower_id}", response_model=BorrowerModel, dependencies=[Depends(get_api_key)])
async def update_borrower(borrower_id: str, update: UpdateBorrowerModel, library: Library = Depends(get_library)):
    changes = update.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    found = library.get_borrower(borrower_id)
    if isinstance(found, NotFound):
        raise HTTPException(status_code=404, detail="Borrower not found.")
    form = library.borrower_form(found.record)
    form.stage(**changes)
    borrower = await _submit(library, form)
    return _resolved_borrower_model(library, borrower)


@app.delete("/borrowers/{borrower_id}", dependencies=[Depends(get_api_key)])
async def delete_borrower(borrower_id: str, library: Library = Depends(get_library)):
    if isinstance(library.get_borrower(borrower_id), NotFound):
        raise HTTPException(status_code=404, detail="Borrower not found.")
    result = await library.delete_borrowers([borrower_id])
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    return {"message": "Borrower removed."}


@app.delete("/borrowers/{borrower_id}/books/{book_id}", response_model=BorrowerModel,
            dependencies=[Depends(get_api_key)])
async def return_book(borrower_id: str, book_id: str, library: Library = Depends(get_library)):
    """Take a book off a borrower's list."""
    try:
        borrower = await library.remove_borrowed_book(borrower_id, book_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return _resolved_borrower_model(library, borrower)


# --- Logs, stats & facets ---
@app.get("/logs", response_model=List[LogModel])
def get_logs(
    q: Optional[str] = Query(None, description="Search in log details, book titles and borrower names"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
    library: Library = Depends(get_library),
):
    """Audit log, newest first."""
    page = paginate(library.search_logs(q or ""), offset, limit)
    return [LogModel(**entry.to_dict()) for entry in page.items]


@app.get("/stats", response_model=StatsModel)
def get_library_stats(library: Library = Depends(get_library)):
    """Dashboard counters for the user's library."""
    stats = library.dashboard()
    stats["recent_additions"] = [BookModel(**b.to_dict()) for b in stats["recent_additions"]]
    return StatsModel(**stats)


@app.get("/facets", response_model=FacetsModel)
def get_facets(library: Library = Depends(get_library)):
    """Values available to the author, category and collection filters."""
    return FacetsModel(**library.facets())


# --- Export ---
@app.get("/export/json")
def export_json(
    kind: str = Query("books", description="books|borrowers"),
    library: Library = Depends(get_library),
):
    """Export books or borrowers as JSON."""
    if kind == "books":
        data = [b.to_dict() for b in library.query_books()]
    elif kind == "borrowers":
        data = [r.to_dict() for r in library.resolved_borrowers()]
    else:
        raise HTTPException(status_code=400, detail="Invalid kind. Allowed: books, borrowers")
    return JSONResponse(
        content=data,
        headers={"Content-Disposition": f"attachment; filename={_export_filename('json')}"},
    )


@app.get("/export/csv")
def export_csv(
    kind: str = Query("books", description="books|borrowers"),
    library: Library = Depends(get_library),
):
    """Export books or borrowers as CSV."""
    if kind == "books":
        fieldnames, rows = BOOK_EXPORT_FIELDS, library.export_books()
    elif kind == "borrowers":
        fieldnames, rows = BORROWER_EXPORT_FIELDS, library.export_borrowers()
    else:
        raise HTTPException(status_code=400, detail="Invalid kind. Allowed: books, borrowers")

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=fieldnames)
    writer.writeheader()
    for row in rows:
        writer.writerow(row)

    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={_export_filename('csv')}"},
    )
