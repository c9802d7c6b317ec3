"""
Double-Entry Accounting Ledger

Append-only accounting entries grouped by document code. Every document
posted must balance: total debits equal total credits. Entries are never
edited; a voided document is offset by a mirrored reversal document and the
originals are flagged VOIDED.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple
import logging

from .errors import ConflictError, LedgerImbalanceError, ValidationError
from .logging_config import log_action
from .money import ZERO, round_money
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.ledger")


class EntryNature(Enum):
    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def inverse(self) -> 'EntryNature':
        return EntryNature.CREDIT if self == EntryNature.DEBIT else EntryNature.DEBIT


class ProcessType(Enum):
    """Originating process; each has its own document code prefix"""
    LIQUIDATION = "L"
    RECEIPT = "R"
    RECEIPT_VOID = "V"


class EntrySourceType(Enum):
    LOAN_APPROVAL = "loan_approval"
    LOAN_PAYMENT = "loan_payment"
    LOAN_PAYMENT_VOID = "loan_payment_void"


class EntryStatus(Enum):
    DRAFT = "draft"
    VOIDED = "voided"


def document_code(process_type: ProcessType, number: int) -> str:
    """Process prefix followed by a six digit, zero padded number"""
    return f"{process_type.value}{number % 1_000_000:06d}"


@dataclass
class EntryLine:
    """Line of a document before it is posted"""
    gl_account_id: str
    nature: EntryNature
    amount: Decimal
    third_party_id: Optional[str] = None
    installment_number: Optional[int] = None
    due_date: Optional[date] = None
    description: str = ""


@dataclass
class AccountingEntry(StorageRecord):
    """Posted accounting entry, unique on (process_type, document_code, source_id, sequence)"""
    process_type: ProcessType
    document_code: str
    sequence: int
    entry_date: date
    gl_account_id: str
    nature: EntryNature
    amount: Decimal
    source_type: EntrySourceType
    source_id: str
    loan_id: Optional[str] = None
    third_party_id: Optional[str] = None
    installment_number: Optional[int] = None
    due_date: Optional[date] = None
    description: str = ""
    status: EntryStatus = EntryStatus.DRAFT
    reversal_of_entry_id: Optional[str] = None


def totals(lines) -> Tuple[Decimal, Decimal]:
    """(total debits, total credits) of entry lines or posted entries"""
    debits = sum((l.amount for l in lines if l.nature == EntryNature.DEBIT), ZERO)
    credits = sum((l.amount for l in lines if l.nature == EntryNature.CREDIT), ZERO)
    return debits, credits


def verify_balanced(document: str, lines) -> None:
    """
    Raises:
        LedgerImbalanceError: Debits and credits differ
    """
    debits, credits = totals(lines)
    if debits != credits:
        logger.critical("Accounting document %s does not balance: debits=%s credits=%s",
                        document, debits, credits)
        raise LedgerImbalanceError(
            f"Document {document} not balanced: debits={debits}, credits={credits}",
            {"document_code": document, "debits": str(debits), "credits": str(credits)}
        )


class AccountingLedger:
    """
    Posts and reverses balanced accounting documents
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "accounting_entries"

    def post_document(
        self,
        process_type: ProcessType,
        code: str,
        entry_date: date,
        source_type: EntrySourceType,
        source_id: str,
        lines: List[EntryLine],
        loan_id: Optional[str] = None,
    ) -> List[AccountingEntry]:
        """
        Post a balanced document

        Args:
            process_type: Originating process
            code: Document code grouping the entries
            entry_date: Accounting date
            source_type: Kind of record that produced the document
            source_id: Id of that record
            lines: Debit and credit lines
            loan_id: Loan the document concerns

        Returns:
            Posted entries in sequence order

        Raises:
            ValidationError: Empty document or a non-positive line amount
            LedgerImbalanceError: Debits and credits differ
            ConflictError: The document code was already posted for this source
        """
        if not lines:
            raise ValidationError(f"Document {code} has no lines")
        for line in lines:
            if line.amount <= ZERO:
                raise ValidationError(f"Document {code} has a non-positive line amount {line.amount}")
            if round_money(line.amount) != line.amount:
                raise ValidationError(f"Document {code} has a line amount with sub-cent precision")

        verify_balanced(code, lines)

        # Codes wrap at six digits, so a code is only unique together with its source
        if self.get_document(code, source_id):
            raise ConflictError(f"Accounting document {code} already exists",
                                {"document_code": code, "source_id": source_id})

        now = datetime.now(timezone.utc)
        entries = []
        for sequence, line in enumerate(lines, start=1):
            entry = AccountingEntry(
                id=f"{process_type.value}:{code}:{source_id}:{sequence}",
                created_at=now,
                updated_at=now,
                process_type=process_type,
                document_code=code,
                sequence=sequence,
                entry_date=entry_date,
                gl_account_id=line.gl_account_id,
                nature=line.nature,
                amount=line.amount,
                source_type=source_type,
                source_id=source_id,
                loan_id=loan_id,
                third_party_id=line.third_party_id,
                installment_number=line.installment_number,
                due_date=line.due_date,
                description=line.description,
            )
            self._save_entry(entry)
            entries.append(entry)

        debits, _ = totals(entries)
        log_action(logger, "info", "Accounting document posted",
                   action="post_document", resource="accounting_entries",
                   loan_id=loan_id, document_code=code,
                   extra={"lines": len(entries), "total": str(debits)})
        return entries

    def reverse_document(
        self,
        original_code: str,
        reversal_code: str,
        entry_date: date,
        source_type: EntrySourceType,
        source_id: str,
    ) -> List[AccountingEntry]:
        """
        Post a mirror of a document with inverted natures and flag the
        originals VOIDED. The original is the document posted under
        `original_code` by the same `source_id`.

        Raises:
            ConflictError: Original missing or already voided
        """
        originals = self.get_document(original_code, source_id)
        if not originals:
            raise ConflictError(f"Accounting document {original_code} not found")
        if any(e.status == EntryStatus.VOIDED for e in originals):
            raise ConflictError(f"Accounting document {original_code} is already voided")

        lines = [
            EntryLine(
                gl_account_id=e.gl_account_id,
                nature=e.nature.inverse,
                amount=e.amount,
                third_party_id=e.third_party_id,
                installment_number=e.installment_number,
                due_date=e.due_date,
                description=f"Reversal of {original_code}",
            )
            for e in originals
        ]
        reversal = self.post_document(
            ProcessType.RECEIPT_VOID, reversal_code, entry_date,
            source_type, source_id, lines, loan_id=originals[0].loan_id
        )

        now = datetime.now(timezone.utc)
        for original, mirror in zip(originals, reversal):
            mirror.reversal_of_entry_id = original.id
            self._save_entry(mirror)
            original.status = EntryStatus.VOIDED
            original.updated_at = now
            self._save_entry(original)

        return reversal

    def get_document(self, code: str, source_id: Optional[str] = None) -> List[AccountingEntry]:
        """Entries posted under a document code, optionally for one source record"""
        filters = {"document_code": code}
        if source_id is not None:
            filters["source_id"] = source_id
        entries = [AccountingEntry.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        return sorted(entries, key=lambda e: (e.source_id, e.sequence))

    def get_entries_for_loan(self, loan_id: str) -> List[AccountingEntry]:
        entries = [AccountingEntry.from_dict(d)
                   for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        return sorted(entries, key=lambda e: (e.document_code, e.sequence))

    def account_balances(self, loan_id: Optional[str] = None) -> Dict[str, Decimal]:
        """Net debit-minus-credit per GL account, optionally for one loan"""
        if loan_id:
            entries = self.get_entries_for_loan(loan_id)
        else:
            entries = [AccountingEntry.from_dict(d) for d in self.storage.load_all(self.table_name)]

        balances: Dict[str, Decimal] = {}
        for entry in entries:
            signed = entry.amount if entry.nature == EntryNature.DEBIT else -entry.amount
            balances[entry.gl_account_id] = balances.get(entry.gl_account_id, ZERO) + signed
        return balances

    def _save_entry(self, entry: AccountingEntry) -> None:
        self.storage.save(self.table_name, entry.id, entry.to_dict())
