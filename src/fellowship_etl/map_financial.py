"""fellowship_etl.map_financial

Financial batches and contributions.

Batches are staged; their destination ids reach the BatchIdMap
(ReferenceSet.batches) once the chunk holding them is written.  A batch
seen in this run but not yet flushed maps to None.
"""

from __future__ import annotations

import logging
from typing import Iterable

from fellowship_etl.batch import TableProgress
from fellowship_etl.context import ImportContext
from fellowship_etl.models import FinancialAccount, FinancialBatch, FinancialTransaction
from fellowship_etl.resolver import resolve_person
from fellowship_etl.shared import TableResult
from fellowship_etl.source import SourceRow

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

def map_batch(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    result = TableResult("Batch")

    def record_ids(batches: list[FinancialBatch]) -> None:
        for batch in batches:
            ctx.refs.batches[batch.foreign_id] = batch.id

    ctx.writer.on_flushed("financial_batch", record_ids)
    progress = TableProgress(ctx.progress, "batch", total, len(ctx.refs.batches))
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        batch_id = row.get_int("BatchID")
        if batch_id is None:
            ctx.skip(result, row, "missing BatchID")
            continue
        if batch_id in ctx.refs.batches:
            continue

        name = row.get_str("BatchName") or f"Batch {batch_id}"
        campus = ctx.campuses.find(name)
        ctx.writer.stage(FinancialBatch(
            foreign_id=batch_id,
            name=name,
            batch_date=row.get_datetime("BatchDate"),
            control_amount=row.get_decimal("BatchAmount"),
            campus_id=campus.id if campus else None,
        ))
        ctx.refs.batches[batch_id] = None
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Contribution
# ---------------------------------------------------------------------------

def ensure_account(
    ctx: ImportContext,
    name: str,
    parent: FinancialAccount | None = None,
) -> FinancialAccount:
    """Account by (case-insensitive) name, saved immediately when new."""
    key = name.casefold()
    account = ctx.refs.accounts.get(key)
    if account is None:
        campus = ctx.campuses.find(name)
        account = FinancialAccount(
            name=name,
            foreign_key=name,
            parent_account_id=parent.id if parent else None,
            campus_id=campus.id if campus else (parent.campus_id if parent else None),
        )
        ctx.writer.save_now(account)
        ctx.refs.accounts[key] = account
        log.info("financial account created: %s", name)
    return account


def map_contribution(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Contributions become transactions on the fund (or sub-fund) account.

    The giver is the individual when given and imported, otherwise the
    household's primary person.
    """
    result = TableResult("Contribution")
    progress = TableProgress(ctx.progress, "contribution", total)
    progress.start()

    seen: set[int] = set()
    completed = 0
    for row in rows:
        result.rows_read += 1
        contribution_id = row.get_int("ContributionID")
        amount = row.get_decimal("Amount")
        fund = row.get_str("Fund_Name")
        if contribution_id is None or amount is None or not fund:
            ctx.skip(result, row, "missing ContributionID, Amount or Fund_Name")
            continue
        if contribution_id in seen:
            continue

        individual_id = row.get_int("Individual_ID")
        household_id = row.get_int("Household_ID")
        giver = resolve_person(ctx.refs, individual_id) if individual_id is not None else None
        if giver is None and household_id is not None:
            giver = resolve_person(ctx.refs, household_id=household_id)
        if giver is None or giver.alias_id is None:
            ctx.skip(result, row, "no imported person for individual/household")
            continue

        account = ensure_account(ctx, fund)
        sub_fund = row.get_str("Sub_Fund_Name")
        if sub_fund:
            account = ensure_account(ctx, sub_fund, parent=account)

        batch_source_id = row.get_int("BatchID")
        seen.add(contribution_id)
        ctx.writer.stage(FinancialTransaction(
            foreign_id=contribution_id,
            person_alias_id=giver.alias_id,
            account_id=account.id,
            amount=amount,
            transaction_date=row.get_datetime("Received_Date"),
            batch_id=ctx.refs.batches.get(batch_source_id) if batch_source_id is not None else None,
            check_number=row.get_str("Check_Number"),
            transaction_type=row.get_str("Contribution_Type_Name"),
            summary=row.get_str("Memo"),
        ))
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result
