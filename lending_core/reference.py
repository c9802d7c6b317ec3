"""
Reference Data Module

Reference entities consulted by origination and posting: offices, repayment
methods, guarantee types, third parties, agreements, tender types, general
ledger accounts and receipt types. The engine only needs existence and
active-status checks from them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .errors import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord


class ReferenceKind(Enum):
    OFFICE = "office"
    REPAYMENT_METHOD = "repayment_method"
    GUARANTEE_TYPE = "guarantee_type"
    THIRD_PARTY = "third_party"
    AGREEMENT = "agreement"
    TENDER_TYPE = "tender_type"


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    REVENUE = "revenue"       # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance


@dataclass
class ReferenceRecord(StorageRecord):
    """Generic reference row"""
    kind: ReferenceKind
    code: str
    name: str
    is_active: bool = True
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GLAccount(StorageRecord):
    """
    General ledger account. Receivable accounts are tracked per installment
    on the portfolio.
    """
    code: str
    name: str
    account_type: AccountType
    is_receivable: bool = False
    is_active: bool = True


@dataclass
class ReceiptType(StorageRecord):
    """Kind of cash receipt; its code prefixes payment numbers"""
    code: str
    name: str
    gl_account_id: str
    enabled_user_ids: List[str] = field(default_factory=list)
    is_active: bool = True

    def is_enabled_for(self, user_id: str) -> bool:
        return user_id in self.enabled_user_ids


class ReferenceRegistry:
    """Stores reference data and answers existence/active checks"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.gl_accounts_table = "gl_accounts"
        self.receipt_types_table = "receipt_types"

    @staticmethod
    def _table(kind: ReferenceKind) -> str:
        return f"reference_{kind.value}"

    def create(self, kind: ReferenceKind, code: str, name: str, is_active: bool = True,
               attributes: Optional[Dict[str, Any]] = None) -> ReferenceRecord:
        now = datetime.now(timezone.utc)
        record = ReferenceRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            code=code,
            name=name,
            is_active=is_active,
            attributes=attributes or {},
        )
        self.storage.save(self._table(kind), record.id, record.to_dict())
        return record

    def get(self, kind: ReferenceKind, record_id: str) -> Optional[ReferenceRecord]:
        data = self.storage.load(self._table(kind), record_id)
        return ReferenceRecord.from_dict(data) if data else None

    def set_active(self, kind: ReferenceKind, record_id: str, is_active: bool) -> ReferenceRecord:
        record = self.get(kind, record_id)
        if not record:
            raise NotFoundError(f"{kind.value} {record_id} not found")
        record.is_active = is_active
        record.updated_at = datetime.now(timezone.utc)
        self.storage.save(self._table(kind), record.id, record.to_dict())
        return record

    def require_active(self, kind: ReferenceKind, record_id: Optional[str]) -> ReferenceRecord:
        """
        Return the active record or raise

        Raises:
            ValidationError: No id supplied
            NotFoundError: Missing or inactive record
        """
        if not record_id:
            raise ValidationError(f"A {kind.value.replace('_', ' ')} is required")
        record = self.get(kind, record_id)
        if not record or not record.is_active:
            raise NotFoundError(f"{kind.value} {record_id} not found or inactive",
                                {"kind": kind.value, "id": record_id})
        return record

    def create_gl_account(self, code: str, name: str, account_type: AccountType,
                          is_receivable: bool = False, is_active: bool = True) -> GLAccount:
        now = datetime.now(timezone.utc)
        account = GLAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            account_type=account_type,
            is_receivable=is_receivable,
            is_active=is_active,
        )
        self.storage.save(self.gl_accounts_table, account.id, account.to_dict())
        return account

    def get_gl_account(self, account_id: str) -> Optional[GLAccount]:
        data = self.storage.load(self.gl_accounts_table, account_id)
        return GLAccount.from_dict(data) if data else None

    def require_gl_account(self, account_id: Optional[str]) -> GLAccount:
        if not account_id:
            raise ValidationError("A general ledger account is required")
        account = self.get_gl_account(account_id)
        if not account or not account.is_active:
            raise NotFoundError(f"GL account {account_id} not found or inactive",
                                {"gl_account_id": account_id})
        return account

    def create_receipt_type(self, code: str, name: str, gl_account_id: str,
                            enabled_user_ids: Optional[List[str]] = None,
                            is_active: bool = True) -> ReceiptType:
        self.require_gl_account(gl_account_id)
        now = datetime.now(timezone.utc)
        receipt_type = ReceiptType(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            gl_account_id=gl_account_id,
            enabled_user_ids=list(enabled_user_ids or []),
            is_active=is_active,
        )
        self.storage.save(self.receipt_types_table, receipt_type.id, receipt_type.to_dict())
        return receipt_type

    def get_receipt_type(self, receipt_type_id: str) -> Optional[ReceiptType]:
        data = self.storage.load(self.receipt_types_table, receipt_type_id)
        return ReceiptType.from_dict(data) if data else None

    def require_receipt_type_for_user(self, receipt_type_id: str, user_id: str) -> ReceiptType:
        """
        Raises:
            NotFoundError: Receipt type missing or inactive
            ValidationError: Receipt type not enabled for the user
        """
        receipt_type = self.get_receipt_type(receipt_type_id)
        if not receipt_type or not receipt_type.is_active:
            raise NotFoundError(f"Receipt type {receipt_type_id} not found or inactive",
                                {"receipt_type_id": receipt_type_id})
        if not receipt_type.is_enabled_for(user_id):
            raise ValidationError(f"Receipt type {receipt_type.code} is not enabled for user {user_id}",
                                  {"receipt_type_id": receipt_type_id, "user_id": user_id})
        return receipt_type
