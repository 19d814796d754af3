"""
QuickBooks Online accounting operations.

Listings (customers, items, vendors, accounts) and the create-X builders
(customer, item, invoice, estimate, sales receipt, bill). Every operation
takes an AuthContext and returns flat dicts ready for the page; required
fields are checked before any network call.
"""
import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional, Union

from qbo_demo.config import Settings, settings as default_settings
from qbo_demo.exceptions import ConfigurationError, QuickBooksAPIError, ValidationError
from qbo_demo.services.accounting_client import AccountingClient
from qbo_demo.services.project_resolver import ProjectResolver
from qbo_demo.services.project_service import ProjectService, get_project_service
from qbo_demo.session import AuthContext

logger = logging.getLogger(__name__)

SALES_RECEIPT_LINK = "https://app.qbo.intuit.com/app/salesreceipt?txnId={txn_id}"
BILL_LINK = "https://app.qbo.intuit.com/app/bill?txnId={txn_id}"

CUSTOMERS_QUERY = "Select * from Customer where Job = false"
ITEMS_QUERY = (
    "Select Id, Name, Type from Item where Active = true "
    "and Type in ('Service','NonInventory','Inventory') MAXRESULTS 25"
)
VENDORS_QUERY = "select Id, DisplayName from Vendor where Active = true"
EXPENSE_ACCOUNTS_QUERY = (
    "select Id, Name, AccountType from Account where Active = true "
    "and AccountType in ('Expense','Cost of Goods Sold')"
)
ACCOUNTS_QUERY = (
    "Select Id, Name, AccountType, AccountSubType, CurrentBalance, FullyQualifiedName "
    "from Account where Active = true"
)
INCOME_ACCOUNT_QUERY = "select * from Account where AccountType = 'Income' and Active = true"

Number = Union[int, float, Decimal, str]
CENT = Decimal("0.01")


def _require(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def _money(value: Number) -> Decimal:
    try:
        money = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"Amount must be a number, got {value!r}")
    if not money.is_finite():
        raise ValidationError("Amount must be a finite number")
    return money


def _amount(value: Decimal) -> float:
    """Decimal -> JSON-safe amount rounded to cents."""
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def _ref(value: str, name: Optional[str] = None) -> dict[str, str]:
    ref = {"value": value}
    if name:
        ref["name"] = name
    return ref


def _sales_line(
    item_id: str,
    quantity: int,
    unit_price: Decimal,
    total: Decimal,
    description: Optional[str],
    item_name: Optional[str] = None,
    tax_code: Optional[str] = None,
) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "ItemRef": _ref(item_id, item_name),
        "Qty": quantity,
        "UnitPrice": _amount(unit_price),
    }
    if tax_code:
        detail["TaxCodeRef"] = _ref(tax_code)
    line: dict[str, Any] = {
        "Amount": _amount(total),
        "DetailType": "SalesItemLineDetail",
        "SalesItemLineDetail": detail,
    }
    if description and description.strip():
        line["Description"] = description
    return line


def _subtotal_line(total: Decimal) -> dict[str, Any]:
    return {"Amount": _amount(total), "DetailType": "SubTotalLineDetail", "SubTotalLineDetail": {}}


class QuickBooksService:
    """Accounting reads and writes for the connected company."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        accounting: Optional[AccountingClient] = None,
        projects: Optional[ProjectService] = None,
        resolver: Optional[ProjectResolver] = None,
    ):
        self.settings = settings or default_settings
        self.accounting = accounting or AccountingClient(self.settings)
        self.projects = projects or get_project_service()
        self.resolver = resolver or ProjectResolver(self.accounting, self.projects)

    # ── Listings ────────────────────────────────────────────────

    async def get_customers(self, ctx: AuthContext) -> dict[str, Any]:
        rows = await self.accounting.query_entities(ctx, CUSTOMERS_QUERY, "Customer", operation="get customers")
        customers = []
        for row in rows:
            name = row.get("DisplayName") or row.get("FullyQualifiedName") or ""
            customers.append({"id": str(row.get("Id")), "name": name})
        return {
            "customers": customers,
            "customer_names": [c["name"] for c in customers],
            "customer_map": {c["id"]: c["name"] for c in customers},
        }

    async def get_items(self, ctx: AuthContext) -> dict[str, Any]:
        rows = await self.accounting.query_entities(ctx, ITEMS_QUERY, "Item", operation="get items")
        items = []
        for row in rows:
            item_type = row.get("Type")
            # Categories cannot be sold
            if item_type and item_type.lower() == "category":
                continue
            items.append({"id": str(row.get("Id")), "name": row.get("Name"), "type": item_type})
        return {
            "items": items,
            "item_names": [i["name"] for i in items],
            "item_map": {i["id"]: i["name"] for i in items},
        }

    async def get_vendors(self, ctx: AuthContext) -> dict[str, Any]:
        rows = await self.accounting.query_entities(ctx, VENDORS_QUERY, "Vendor", operation="get vendors")
        return {"vendors": [{"id": str(r.get("Id")), "name": r.get("DisplayName")} for r in rows]}

    async def get_expense_accounts(self, ctx: AuthContext) -> dict[str, Any]:
        rows = await self.accounting.query_entities(
            ctx, EXPENSE_ACCOUNTS_QUERY, "Account", operation="get expense accounts"
        )
        return {
            "accounts": [
                {"id": str(r.get("Id")), "name": r.get("Name"), "type": r.get("AccountType") or ""}
                for r in rows
            ]
        }

    async def get_accounts(self, ctx: AuthContext) -> dict[str, Any]:
        rows = await self.accounting.query_entities(ctx, ACCOUNTS_QUERY, "Account", operation="get accounts")
        accounts = [
            {
                "id": str(r.get("Id")),
                "name": r.get("Name"),
                "type": r.get("AccountType"),
                "sub_type": r.get("AccountSubType"),
                "fully_qualified_name": r.get("FullyQualifiedName"),
                "current_balance": float(r.get("CurrentBalance") or 0),
            }
            for r in rows
        ]
        return {"accounts": accounts, "count": len(accounts)}

    # ── Customers & items ───────────────────────────────────────

    async def create_customer(
        self,
        ctx: AuthContext,
        display_name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> dict[str, Any]:
        display_name = _require(display_name, "Customer display name")
        payload: dict[str, Any] = {"DisplayName": display_name}
        if email and email.strip():
            payload["PrimaryEmailAddr"] = {"Address": email.strip()}
        if phone and phone.strip():
            payload["PrimaryPhone"] = {"FreeFormNumber": phone.strip()}

        created = await self.accounting.create(ctx, "Customer", payload, operation="create customer")
        logger.info(f"Created customer {created.get('Id')}")
        return {"id": str(created.get("Id")), "name": created.get("DisplayName")}

    async def find_income_account_id(self, ctx: AuthContext) -> Optional[str]:
        rows = await self.accounting.query_entities(
            ctx, INCOME_ACCOUNT_QUERY, "Account", operation="find income account"
        )
        return str(rows[0]["Id"]) if rows and rows[0].get("Id") is not None else None

    async def create_item(self, ctx: AuthContext, name: str, unit_price: Number) -> dict[str, Any]:
        name = _require(name, "Item name")
        price = _money(unit_price)
        if price < 0:
            raise ValidationError("Unit price must be >= 0")

        income_account_id = await self.find_income_account_id(ctx)
        if income_account_id is None:
            raise QuickBooksAPIError("Could not find an Income account to assign to the item")

        payload = {
            "Name": name,
            "Type": "Service",
            "UnitPrice": _amount(price),
            "IncomeAccountRef": _ref(income_account_id),
        }
        created = await self.accounting.create(ctx, "Item", payload, operation="create item")
        logger.info(f"Created item {created.get('Id')}")
        return {"id": str(created.get("Id")), "name": created.get("Name"), "unit_price": created.get("UnitPrice")}

    # ── Sales documents ─────────────────────────────────────────

    def invoice_deep_link(self, invoice_id: str, realm_id: str) -> str:
        invoice_id = _require(invoice_id, "Invoice ID")
        realm_id = _require(realm_id, "Realm ID")
        try:
            return self.settings.invoice_deep_link(invoice_id, realm_id)
        except (ValueError, KeyError, IndexError) as e:
            raise ConfigurationError("QBO_DEEP_LINK_TEMPLATE", str(e)) from e

    async def create_invoice(
        self,
        ctx: AuthContext,
        customer_id: str,
        item_id: str,
        item_name: Optional[str],
        project_id: str,
        quantity: int,
        unit_price: Number,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        """Invoice linked to a project; the project reference is resolved first."""
        customer_id = _require(customer_id, "Customer ID")
        item_id = _require(item_id, "Item ID")
        project_id = _require(project_id, "Project ID")

        price = _money(unit_price)
        project_ref = await self.resolver.resolve_project_reference_for_write(project_id, ctx)
        total = Decimal(quantity) * price
        payload = {
            "CustomerRef": _ref(customer_id),
            "ProjectRef": _ref(project_ref),
            "Line": [_sales_line(item_id, quantity, price, total, description, item_name=item_name)],
        }
        created = await self.accounting.create(ctx, "Invoice", payload, operation="create invoice")

        invoice_id = str(created.get("Id"))
        logger.info(f"Created invoice {invoice_id} for project {project_ref}")
        return {
            "invoice_id": invoice_id,
            "deep_link": self.invoice_deep_link(invoice_id, ctx.realm_id),
            "project_id": project_id,
            "customer_id": customer_id,
            "amount": _amount(total),
            "doc_number": created.get("DocNumber"),
            "total_amt": created.get("TotalAmt"),
        }

    async def create_estimate(
        self,
        ctx: AuthContext,
        customer_id: str,
        item_id: str,
        project_id: str,
        quantity: int,
        unit_price: Number,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        customer_id = _require(customer_id, "Customer ID")
        item_id = _require(item_id, "Item ID")
        project_id = _require(project_id, "Project ID")

        price = _money(unit_price)
        total = Decimal(quantity) * price
        line = _sales_line(item_id, quantity, price, total, description, tax_code="NON")
        line.update({"Id": "1", "LineNum": 1})
        payload = {
            "TxnDate": date.today().isoformat(),
            "CurrencyRef": {"value": "USD", "name": "United States Dollar"},
            "ProjectRef": _ref(project_id),
            "CustomerRef": _ref(customer_id),
            "Line": [line, _subtotal_line(total)],
        }
        created = await self.accounting.create(ctx, "Estimate", payload, operation="create estimate")
        return {
            "estimate_id": created.get("Id"),
            "total_amt": float(created.get("TotalAmt") or 0),
            "project_id": project_id,
            "customer_id": customer_id,
        }

    async def create_sales_receipt(
        self,
        ctx: AuthContext,
        customer_id: str,
        item_id: str,
        project_id: str,
        quantity: int,
        unit_price: Number,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        customer_id = _require(customer_id, "Customer ID")
        item_id = _require(item_id, "Item ID")
        project_id = _require(project_id, "Project ID")
        price = _money(unit_price)
        if quantity <= 0 or price < 0:
            raise ValidationError("Quantity must be > 0 and UnitPrice >= 0")

        total = Decimal(quantity) * price
        line = _sales_line(item_id, quantity, price, total, description, tax_code="NON")
        line.update({"Id": "1", "LineNum": 1, "ProjectRef": _ref(project_id)})
        payload = {
            "TxnDate": date.today().isoformat(),
            "CurrencyRef": {"value": "USD", "name": "United States Dollar"},
            "CustomerRef": _ref(customer_id),
            "Line": [line, _subtotal_line(total)],
        }
        created = await self.accounting.create(ctx, "SalesReceipt", payload, operation="create sales receipt")
        txn_id = created.get("Id") or ""
        return {
            "sales_receipt_id": created.get("Id"),
            "total_amt": float(created.get("TotalAmt") or 0),
            "project_id": project_id,
            "deep_link": SALES_RECEIPT_LINK.format(txn_id=txn_id),
        }

    # ── Expenses ────────────────────────────────────────────────

    async def create_bill(
        self,
        ctx: AuthContext,
        vendor_id: str,
        expense_account_id: str,
        project_id: str,
        amount: Number,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        vendor_id = _require(vendor_id, "Vendor ID")
        expense_account_id = _require(expense_account_id, "Expense Account ID")
        project_id = _require(project_id, "Project ID")
        value = _money(amount)
        if value <= 0:
            raise ValidationError("Amount must be > 0")

        line: dict[str, Any] = {
            "Id": "1",
            "DetailType": "AccountBasedExpenseLineDetail",
            "Amount": _amount(value),
            "ProjectRef": _ref(project_id),
            "AccountBasedExpenseLineDetail": {"AccountRef": _ref(expense_account_id)},
        }
        if description and description.strip():
            line["Description"] = description
        payload = {
            "TxnDate": date.today().isoformat(),
            "VendorRef": _ref(vendor_id),
            "Line": [line],
        }
        created = await self.accounting.create(ctx, "Bill", payload, operation="create bill")
        txn_id = created.get("Id") or ""
        return {
            "bill_id": created.get("Id"),
            "total_amt": float(created.get("TotalAmt") or 0),
            "project_id": project_id,
            "vendor_id": vendor_id,
            "deep_link": BILL_LINK.format(txn_id=txn_id),
        }

    async def close(self) -> None:
        await self.accounting.close()


# Singleton
_qbo_service: Optional[QuickBooksService] = None


def get_qbo_service() -> QuickBooksService:
    global _qbo_service
    if _qbo_service is None:
        _qbo_service = QuickBooksService()
    return _qbo_service
