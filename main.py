import logging
from dataclasses import asdict
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from backup import BackupService
from database import SessionLocal, session_scope
from errors import NotFound, StorageFailure, ValidationError
from scheduler import SchedulerManager
from schemas import (
    BulkRecategorizeIn,
    BulkTagIn,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    FinancialSummary,
    ImportIn,
    ProcessIn,
    RecurringRuleIn,
    RecurringRuleOut,
    SplitIn,
    SubcategoryIn,
    SubcategoryOut,
    TagIn,
    TransactionIn,
    TransactionOut,
)
from services import (
    BulkService,
    CategoryService,
    RecurringRuleService,
    SummaryService,
    TagService,
    TransactionService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        seeded = CategoryService(session).seed_defaults()
    if seeded:
        logger.info(f"default_categories_seeded: count={seeded}")
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StorageFailure)
async def storage_handler(request: Request, exc: StorageFailure):
    logger.error(f"storage_failure: path={request.url.path} error={exc}")
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


# Categories


@app.get("/api/categories", response_model=list[CategoryOut])
def api_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def api_create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    return CategoryService(db).create(payload)


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def api_update_category(
    category_id: str, payload: CategoryUpdate, db: Session = Depends(get_db)
):
    return CategoryService(db).update(category_id, payload)


@app.delete("/api/categories/{category_id}")
def api_delete_category(
    category_id: str,
    target_category_id: Optional[str] = None,
    target_subcategory_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    result = CategoryService(db).delete(
        category_id, target_category_id, target_subcategory_id
    )
    return asdict(result)


@app.post(
    "/api/categories/{category_id}/subcategories",
    response_model=SubcategoryOut,
    status_code=201,
)
def api_add_subcategory(
    category_id: str, payload: SubcategoryIn, db: Session = Depends(get_db)
):
    return CategoryService(db).add_subcategory(category_id, payload.name)


@app.patch(
    "/api/categories/{category_id}/subcategories/{subcategory_id}",
    response_model=SubcategoryOut,
)
def api_rename_subcategory(
    category_id: str,
    subcategory_id: str,
    payload: SubcategoryIn,
    db: Session = Depends(get_db),
):
    return CategoryService(db).rename_subcategory(
        category_id, subcategory_id, payload.name
    )


@app.delete("/api/categories/{category_id}/subcategories/{subcategory_id}")
def api_delete_subcategory(
    category_id: str, subcategory_id: str, db: Session = Depends(get_db)
):
    result = CategoryService(db).delete_subcategory(category_id, subcategory_id)
    return asdict(result)


# Transactions


@app.get("/api/transactions", response_model=list[TransactionOut])
def api_transactions(
    category_id: Optional[str] = None,
    subcategory_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return TransactionService(db).list(category_id, subcategory_id)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    return TransactionService(db).create(payload)


@app.post("/api/transactions/import")
def api_import_transactions(payload: ImportIn, db: Session = Depends(get_db)):
    added = TransactionService(db).import_batch(
        payload.transactions, payload.clear_history, payload.categories
    )
    return {"added": added}


@app.post("/api/transactions/bulk/category", response_model=list[TransactionOut])
def api_bulk_recategorize(payload: BulkRecategorizeIn, db: Session = Depends(get_db)):
    return BulkService(db).recategorize(
        payload.ids, payload.category_id, payload.subcategory_id
    )


@app.post("/api/transactions/bulk/tags", response_model=list[TransactionOut])
def api_bulk_tag(payload: BulkTagIn, db: Session = Depends(get_db)):
    return BulkService(db).tag(payload.ids, payload.tags, payload.mode)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_transaction(transaction_id: str, db: Session = Depends(get_db)):
    return TransactionService(db).get(transaction_id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_update_transaction(
    transaction_id: str, payload: TransactionIn, db: Session = Depends(get_db)
):
    return TransactionService(db).update(transaction_id, payload)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: str, db: Session = Depends(get_db)):
    TransactionService(db).delete(transaction_id)
    return Response(status_code=204)


@app.post(
    "/api/transactions/{transaction_id}/split",
    response_model=list[TransactionOut],
    status_code=201,
)
def api_split_transaction(
    transaction_id: str, payload: SplitIn, db: Session = Depends(get_db)
):
    return BulkService(db).split(transaction_id, payload.parts)


# Recurring rules


@app.get("/api/recurring", response_model=list[RecurringRuleOut])
def api_recurring(db: Session = Depends(get_db)):
    return RecurringRuleService(db).list()


@app.post("/api/recurring", response_model=RecurringRuleOut, status_code=201)
def api_create_recurring(payload: RecurringRuleIn, db: Session = Depends(get_db)):
    return RecurringRuleService(db).create(payload)


@app.get("/api/recurring/due", response_model=list[RecurringRuleOut])
def api_recurring_due(db: Session = Depends(get_db)):
    return RecurringRuleService(db).due_for_approval()


@app.get("/api/recurring/upcoming", response_model=list[RecurringRuleOut])
def api_recurring_upcoming(db: Session = Depends(get_db)):
    return RecurringRuleService(db).upcoming_auto()


@app.post("/api/recurring/run")
def api_recurring_run(db: Session = Depends(get_db)):
    return {"posted": RecurringRuleService(db).catch_up_all()}


@app.get("/api/recurring/{rule_id}", response_model=RecurringRuleOut)
def api_recurring_rule(rule_id: str, db: Session = Depends(get_db)):
    return RecurringRuleService(db).get(rule_id)


@app.delete("/api/recurring/{rule_id}", status_code=204)
def api_delete_recurring(rule_id: str, db: Session = Depends(get_db)):
    RecurringRuleService(db).delete(rule_id)
    return Response(status_code=204)


@app.post("/api/recurring/{rule_id}/process")
def api_process_recurring(
    rule_id: str,
    payload: Optional[ProcessIn] = None,
    db: Session = Depends(get_db),
):
    service = RecurringRuleService(db)
    amount_cents = payload.amount_cents if payload else None
    txn = service.process(rule_id, amount_cents)
    rule = service.get(rule_id)
    return {
        "transaction": (
            TransactionOut.model_validate(txn).model_dump(by_alias=True, mode="json")
            if txn
            else None
        ),
        "rule": RecurringRuleOut.model_validate(rule).model_dump(
            by_alias=True, mode="json"
        ),
    }


@app.post("/api/recurring/{rule_id}/skip", response_model=RecurringRuleOut)
def api_skip_recurring(rule_id: str, db: Session = Depends(get_db)):
    service = RecurringRuleService(db)
    service.skip(rule_id)
    return service.get(rule_id)


# Tags


@app.get("/api/tags")
def api_tags(db: Session = Depends(get_db)):
    return SummaryService(db).all_tags()


@app.post("/api/tags", status_code=201)
def api_create_tag(payload: TagIn, db: Session = Depends(get_db)):
    return {"name": TagService(db).create(payload.name).name}


@app.put("/api/tags/{name}")
def api_rename_tag(name: str, payload: TagIn, db: Session = Depends(get_db)):
    return {"name": TagService(db).rename(name, payload.name).name}


@app.delete("/api/tags/{name}", status_code=204)
def api_delete_tag(name: str, db: Session = Depends(get_db)):
    TagService(db).delete(name)
    return Response(status_code=204)


# Summary and backup


@app.get("/api/summary", response_model=FinancialSummary)
def api_summary(db: Session = Depends(get_db)):
    return SummaryService(db).summary()


@app.get("/api/backup")
def api_backup_export(db: Session = Depends(get_db)):
    return Response(
        content=BackupService(db).export_json(),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="ledger-backup.json"'},
    )


@app.post("/api/backup")
def api_backup_restore(
    payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)
):
    document = BackupService(db).restore(payload)
    return {
        "version": document.version,
        "categories": len(document.categories),
        "transactions": len(document.transactions),
        "recurringRules": len(document.recurring_rules),
    }


@app.post("/api/reset")
def api_factory_reset(db: Session = Depends(get_db)):
    return {"seeded": BackupService(db).factory_reset()}
