"""
Browser routes for the QuickBooks demo page.

Every form posts here, the route calls one service, stores the flattened
result in the session and redirects back to ``/`` with a flash message.
QuickBooksError raised by a service is turned into a flash + redirect by
the exception handler in ``qbo_demo.exceptions``.
"""

import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Optional

from fastapi import APIRouter, Form, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from qbo_demo.api.deps import Auth, OAuthService, Projects, QBOService, Session
from qbo_demo.config import settings
from qbo_demo.exceptions import AuthorizationError, QuickBooksError, StateMismatchError
from qbo_demo.services.project_service import explain_projects_error
from qbo_demo.session import BEARER_PREFIX, WRITE_RESULT_KEYS, CallbackStatus, SessionKeys

logger = logging.getLogger(__name__)

router = APIRouter()

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))


def _home() -> RedirectResponse:
    return RedirectResponse("/", status_code=303)


def mask_token(token: Optional[str]) -> str:
    """Short preview that shows a token changed without exposing it."""
    if token and len(token) > 10:
        return f"{token[:6]}…{token[-4:]}"
    return "(updated)"


def split_ids(values: Optional[list[str]]) -> list[str]:
    """Flatten repeated and comma-separated id fields."""
    ids = []
    for value in values or []:
        ids.extend(part.strip() for part in value.split(",") if part.strip())
    return ids


# =============================================================================
# Page
# =============================================================================


@router.get("/", response_class=HTMLResponse)
async def index(request: Request, session: Session):
    authenticated = session.is_authenticated
    if not authenticated:
        session.clear_company_data()

    context = {
        "authenticated": authenticated,
        "allow_writes": not settings.is_sandbox,
        "environment": settings.QBO_ENVIRONMENT,
        "realm_id": session.get(SessionKeys.REALM_ID),
        "flashes": session.pop_flashes(),
        "customer_map": session.get(SessionKeys.CUSTOMER_MAP) or {},
        "items": session.get(SessionKeys.ITEMS) or [],
        "vendors": session.get(SessionKeys.VENDORS) or [],
        "expense_accounts": session.get(SessionKeys.EXPENSE_ACCOUNTS) or [],
        "project": session.get(SessionKeys.PROJECT),
        "project_source": session.get(SessionKeys.PROJECT_SOURCE),
        "projects": session.get(SessionKeys.PROJECTS),
        "projects_error": session.get(SessionKeys.PROJECTS_ERROR),
        "projects_multi": session.get(SessionKeys.PROJECTS_MULTI),
        "project_delete_result": session.get(SessionKeys.PROJECT_DELETE_RESULT),
        "project_delete_multi_results": session.get(SessionKeys.PROJECT_DELETE_MULTI_RESULTS),
        "invoice": session.get(SessionKeys.INVOICE),
        "estimate": session.get(SessionKeys.ESTIMATE),
        "sales_receipt": session.get(SessionKeys.SALES_RECEIPT),
        "bill": session.get(SessionKeys.BILL),
    }
    return templates.TemplateResponse(request, "index.html", context)


# =============================================================================
# OAuth
# =============================================================================


@router.get("/qbo-login")
async def qbo_login(session: Session, oauth: OAuthService):
    """Send the browser to the Intuit consent screen."""
    auth_request = await oauth.build_authorization_url()
    session.set(SessionKeys.OAUTH_STATE, auth_request.state)
    return RedirectResponse(auth_request.url, status_code=302)


@router.get("/callback")
async def callback(
    session: Session,
    oauth: OAuthService,
    code: Optional[str] = None,
    realm_id: Annotated[Optional[str], Query(alias="realmId")] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    """
    OAuth redirect target.

    A code already recorded as processed (or still processing) for this
    session is never exchanged twice.
    """
    if error:
        session.flash("error", f"QuickBooks authorization was not completed: {error}")
        return _home()
    if not code or not realm_id:
        session.flash("error", "Missing authorization code or realm ID. Please try connecting again.")
        return _home()

    status = session.callback_status(code)
    if status == CallbackStatus.PROCESSED:
        session.flash("success", "Already connected to QuickBooks!")
        return _home()
    if status == CallbackStatus.PROCESSING:
        session.flash("info", "QuickBooks connection in progress. Please wait a moment.")
        return _home()

    expected_state = session.get(SessionKeys.OAUTH_STATE)
    if not state or not expected_state or not secrets.compare_digest(state, expected_state):
        logger.warning("OAuth callback rejected: state missing or mismatched")
        raise StateMismatchError("Invalid OAuth state. Please start the connection again.")

    session.mark_callback(code, CallbackStatus.PROCESSING)
    try:
        grant = await oauth.exchange_code(code, realm_id)
    except QuickBooksError as e:
        session.mark_callback(code, CallbackStatus.UNPROCESSED)
        if isinstance(e, AuthorizationError) and e.clears_callback_marker:
            logger.info("Authorization code expired or reused; a new connect attempt is required")
        raise

    # State is spent only once the code is; a failed exchange may be replayed
    session.remove(SessionKeys.OAUTH_STATE)

    # Lists and results of a previous company no longer apply
    session.clear_company_data()
    session.set(SessionKeys.ACCESS_TOKEN, grant.bearer_value)
    session.set(SessionKeys.REFRESH_TOKEN, grant.refresh_token)
    session.set(SessionKeys.REALM_ID, realm_id)
    if grant.scope:
        session.set(SessionKeys.GRANTED_SCOPE, grant.scope)
    session.set(SessionKeys.AUTH_TIMESTAMP, datetime.now(timezone.utc).isoformat())
    session.mark_callback(code, CallbackStatus.PROCESSED)

    logger.info(f"Connected to QuickBooks realm {realm_id}")
    session.flash("success", "Successfully connected to QuickBooks! You can now fetch customers.")
    return _home()


@router.post("/refresh-token")
async def refresh_token(session: Session, oauth: OAuthService):
    grant = await oauth.refresh(session.get(SessionKeys.REFRESH_TOKEN))
    session.set(SessionKeys.ACCESS_TOKEN, grant.bearer_value)
    if grant.refresh_token:
        session.set(SessionKeys.REFRESH_TOKEN, grant.refresh_token)
    session.flash("success", f"Access token refreshed: {mask_token(grant.access_token)}")
    return _home()


@router.get("/logout")
async def logout(session: Session, oauth: OAuthService):
    """Revoke both tokens (best effort) and drop the session."""
    access_token = session.get(SessionKeys.ACCESS_TOKEN)
    if access_token and access_token.startswith(BEARER_PREFIX):
        access_token = access_token[len(BEARER_PREFIX):]
    await oauth.revoke(access_token)
    await oauth.revoke(session.get(SessionKeys.REFRESH_TOKEN))

    session.invalidate()
    session.flash(
        "success",
        "Successfully disconnected. Please reconnect; a company picker and login will be shown.",
    )
    return _home()


@router.get("/force-clear-session")
async def force_clear_session(request: Request, session: Session):
    """Drop everything without revoking; reports what was there."""
    report = {
        "before_clear_session_id": request.session.get(SessionKeys.SID),
        "before_clear_realm_id": session.get(SessionKeys.REALM_ID),
        "before_clear_access_token": "present" if session.get(SessionKeys.ACCESS_TOKEN) else "null",
    }
    session.invalidate()
    report["status"] = "Session completely cleared and invalidated"
    report["action"] = "Please restart browser and try OAuth again"
    return JSONResponse(report)


@router.get("/test-environment")
async def test_environment(session: Session):
    """Effective configuration, to confirm environment switching."""
    try:
        sample_deep_link = settings.invoice_deep_link("123", "456")
    except (ValueError, KeyError, IndexError):
        sample_deep_link = "(not configured)"

    return {
        "environment": settings.QBO_ENVIRONMENT,
        "base_url": settings.accounting_base_url,
        "graphql_url": settings.QBO_GRAPHQL_URL,
        "sample_deep_link": sample_deep_link,
        "client_id": settings.QBO_CLIENT_ID,
        "redirect_uri": settings.QBO_REDIRECT_URI,
        "realm_id": session.get(SessionKeys.REALM_ID) or "(none)",
        "scope": session.get(SessionKeys.GRANTED_SCOPE)
        or "(unknown)\n(If empty, re-consent to ensure accounting scope)",
        "requested_scopes": " ".join(settings.requested_scopes),
        "authenticated": str(session.is_authenticated).lower(),
    }


# =============================================================================
# Customers & items
# =============================================================================


@router.get("/call-qbo")
async def fetch_customers(session: Session, ctx: Auth, qbo: QBOService):
    """Load customers and items, plus vendors and expense accounts when available."""
    customers = await qbo.get_customers(ctx)
    items = await qbo.get_items(ctx)
    session.set(SessionKeys.CUSTOMERS, customers["customers"])
    session.set(SessionKeys.CUSTOMER_MAP, customers["customer_map"])
    session.set(SessionKeys.ITEMS, items["items"])
    session.set(SessionKeys.ITEM_MAP, items["item_map"])

    # Bill form lookups; the page works without them
    try:
        vendors = await qbo.get_vendors(ctx)
        accounts = await qbo.get_expense_accounts(ctx)
        session.set(SessionKeys.VENDORS, vendors["vendors"])
        session.set(SessionKeys.EXPENSE_ACCOUNTS, accounts["accounts"])
    except QuickBooksError as e:
        logger.warning(f"Vendor/expense account lookup failed: {e.message}")

    session.flash(
        "success",
        f"Successfully loaded {len(customers['customers'])} customers and "
        f"{len(items['items'])} items! Ready for project creation.",
    )
    return _home()


@router.get("/fetch-items")
async def fetch_items(session: Session, ctx: Auth, qbo: QBOService):
    items = await qbo.get_items(ctx)
    session.set(SessionKeys.ITEMS, items["items"])
    session.set(SessionKeys.ITEM_MAP, items["item_map"])
    session.flash("success", "Items loaded successfully!")
    return _home()


@router.post("/create-customer")
async def create_customer(
    session: Session,
    ctx: Auth,
    qbo: QBOService,
    display_name: Annotated[str, Form()],
    email: Annotated[Optional[str], Form()] = None,
    phone: Annotated[Optional[str], Form()] = None,
):
    created = await qbo.create_customer(ctx, display_name, email, phone)

    customers = await qbo.get_customers(ctx)
    session.set(SessionKeys.CUSTOMERS, customers["customers"])
    session.set(SessionKeys.CUSTOMER_MAP, customers["customer_map"])

    session.flash("success", f"Customer created: {created['name']} (ID: {created['id']})")
    return _home()


@router.post("/create-item")
async def create_item(
    session: Session,
    ctx: Auth,
    qbo: QBOService,
    name: Annotated[str, Form()],
    unit_price: Annotated[float, Form()],
):
    created = await qbo.create_item(ctx, name, unit_price)

    items = await qbo.get_items(ctx)
    session.set(SessionKeys.ITEMS, items["items"])
    session.set(SessionKeys.ITEM_MAP, items["item_map"])

    session.flash("success", f"Item created: {created['name']} (ID: {created['id']})")
    return _home()


# =============================================================================
# Projects
# =============================================================================


@router.post("/create-project")
async def create_project(
    session: Session,
    ctx: Auth,
    projects: Projects,
    customer_name: Annotated[str, Form()],
    project_name: Annotated[Optional[str], Form()] = None,
):
    customer_map = session.get(SessionKeys.CUSTOMER_MAP) or {}
    customer_id = next((cid for cid, name in customer_map.items() if name == customer_name), None)
    if customer_id is None:
        session.flash(
            "error", f"Could not find customer ID for: {customer_name}. Please fetch customers first."
        )
        return _home()

    project = await projects.create_project(ctx, customer_name, customer_id, project_name)
    session.set(SessionKeys.PROJECT, project)
    session.set(SessionKeys.PROJECT_SOURCE, "created")
    session.remove(*WRITE_RESULT_KEYS)

    session.flash("success", "Project created successfully!")
    return _home()


@router.post("/projects")
async def list_projects(
    session: Session,
    ctx: Auth,
    projects: Projects,
    first: Annotated[Optional[int], Form()] = None,
    after: Annotated[Optional[str], Form()] = None,
    start_date: Annotated[Optional[str], Form()] = None,
    end_date: Annotated[Optional[str], Form()] = None,
):
    try:
        result = await projects.list_projects(ctx, first, after, start_date, end_date)
    except QuickBooksError as e:
        explanation = explain_projects_error(e.message)
        session.set(SessionKeys.PROJECTS_ERROR, explanation)
        session.remove(SessionKeys.PROJECTS)
        session.flash("warning", explanation)
        return _home()

    session.set(SessionKeys.PROJECTS, result)
    session.remove(SessionKeys.PROJECTS_ERROR)
    session.flash("success", f"Loaded {len(result['nodes'])} projects.")
    return _home()


@router.post("/projects/get")
async def get_project(
    session: Session,
    ctx: Auth,
    projects: Projects,
    qbo: QBOService,
    id: Annotated[str, Form()],
):
    """Load one project and attach its Accounting project id when it resolves."""
    project = await projects.get_project(ctx, id)
    parent_customer_id = (project.get("customer") or {}).get("id")
    accounting_project_id = await qbo.resolver.resolve_accounting_project_id(
        ctx, project.get("name"), parent_customer_id
    )
    if accounting_project_id:
        project["accounting_project_id"] = accounting_project_id

    session.set(SessionKeys.PROJECT, project)
    session.set(SessionKeys.PROJECT_SOURCE, "read")
    session.flash("success", f"Project loaded: {project.get('name') or project['id']}")
    return _home()


@router.post("/projects/get-multi")
async def get_projects_multi(
    session: Session,
    ctx: Auth,
    projects: Projects,
    ids: Annotated[Optional[list[str]], Form()] = None,
):
    project_ids = split_ids(ids)
    if not project_ids:
        session.flash("error", "Please provide at least one project ID.")
        return _home()

    results = await projects.get_projects_by_ids(ctx, project_ids)
    session.set(SessionKeys.PROJECTS_MULTI, results)
    session.flash("success", f"Loaded {len(results)} project(s) by ID.")
    return _home()


@router.post("/delete-project")
async def delete_project(
    session: Session,
    ctx: Auth,
    projects: Projects,
    id: Annotated[str, Form()],
    version: Annotated[Optional[int], Form()] = None,
):
    try:
        result = await projects.delete_project(ctx, id, version)
    except QuickBooksError as e:
        session.set(SessionKeys.PROJECT_DELETE_RESULT, {"id": id, "error": e.message})
        session.flash("error", e.message)
        return _home()

    session.set(SessionKeys.PROJECT_DELETE_RESULT, result)
    current = session.get(SessionKeys.PROJECT)
    if current and str(current.get("id")) == id:
        session.remove(SessionKeys.PROJECT, SessionKeys.PROJECT_SOURCE)

    session.flash("success", f"Project deleted: {id}")
    return _home()


@router.post("/delete-projects-multi")
async def delete_projects_multi(
    session: Session,
    ctx: Auth,
    projects: Projects,
    ids: Annotated[str, Form()],
    version: Annotated[Optional[int], Form()] = None,
):
    """Delete each id independently; one failure does not stop the rest."""
    results = []
    success_count = 0
    fail_count = 0
    for project_id in split_ids([ids]):
        row = {"id": project_id}
        try:
            deleted = await projects.delete_project(ctx, project_id, version)
            row.update(status="success", name=deleted.get("name"), deleted=deleted.get("deleted"))
            success_count += 1
        except QuickBooksError as e:
            row.update(status="error", error=e.message)
            fail_count += 1
        results.append(row)

    session.set(SessionKeys.PROJECT_DELETE_MULTI_RESULTS, results)
    session.flash("success", f"Delete complete: {success_count} success, {fail_count} failed.")
    return _home()


# =============================================================================
# Transactions
# =============================================================================


@router.post("/create-invoice")
async def create_invoice(
    session: Session,
    ctx: Auth,
    qbo: QBOService,
    customer_id: Annotated[str, Form()],
    item_id: Annotated[str, Form()],
    project_id: Annotated[str, Form()],
    quantity: Annotated[int, Form()],
    amount: Annotated[float, Form()],
    item_name: Annotated[Optional[str], Form()] = None,
    description: Annotated[Optional[str], Form()] = None,
):
    if not item_name:
        item_name = (session.get(SessionKeys.ITEM_MAP) or {}).get(item_id)

    invoice = await qbo.create_invoice(
        ctx, customer_id, item_id, item_name, project_id, quantity, amount, description
    )
    session.set(SessionKeys.INVOICE, invoice)
    session.flash(
        "success",
        f"Invoice created successfully! Invoice #{invoice['doc_number']} (ID: {invoice['invoice_id']}) "
        f"linked to Project ID: {invoice['project_id']}",
    )
    return _home()


@router.post("/create-estimate")
async def create_estimate(
    session: Session,
    ctx: Auth,
    qbo: QBOService,
    customer_id: Annotated[str, Form()],
    item_id: Annotated[str, Form()],
    project_id: Annotated[str, Form()],
    quantity: Annotated[int, Form()],
    amount: Annotated[float, Form()],
    description: Annotated[Optional[str], Form()] = None,
):
    estimate = await qbo.create_estimate(ctx, customer_id, item_id, project_id, quantity, amount, description)
    session.set(SessionKeys.ESTIMATE, estimate)
    session.flash("success", f"Estimate created for Project ID: {estimate['project_id']}")
    return _home()


@router.post("/create-sales-receipt")
async def create_sales_receipt(
    session: Session,
    ctx: Auth,
    qbo: QBOService,
    customer_id: Annotated[str, Form()],
    item_id: Annotated[str, Form()],
    project_id: Annotated[str, Form()],
    quantity: Annotated[int, Form()],
    amount: Annotated[float, Form()],
    description: Annotated[Optional[str], Form()] = None,
):
    receipt = await qbo.create_sales_receipt(
        ctx, customer_id, item_id, project_id, quantity, amount, description
    )
    session.set(SessionKeys.SALES_RECEIPT, receipt)
    session.flash("success", f"Sales receipt created for Project ID: {receipt['project_id']}")
    return _home()


@router.post("/create-bill")
async def create_bill(
    session: Session,
    ctx: Auth,
    qbo: QBOService,
    vendor_id: Annotated[str, Form()],
    expense_account_id: Annotated[str, Form()],
    project_id: Annotated[str, Form()],
    amount: Annotated[float, Form()],
    description: Annotated[Optional[str], Form()] = None,
):
    bill = await qbo.create_bill(ctx, vendor_id, expense_account_id, project_id, amount, description)
    session.set(SessionKeys.BILL, bill)
    session.flash(
        "success",
        f"Bill created successfully! Bill ID: {bill['bill_id']}, linked to Project ID: {bill['project_id']}",
    )
    return _home()
