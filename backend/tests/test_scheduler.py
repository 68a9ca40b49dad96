"""Tests for the background scheduler and the overdue invoice sweep."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from procurement.models import InvoiceStatus
from procurement.schemas.purchase_invoice import InvoiceItemCreate, PurchaseInvoiceCreate
from procurement.services.purchase_invoice_service import PurchaseInvoiceService
from procurement.services.scheduler_service import TaskScheduler, run_overdue_invoice_sweep


class TestTaskScheduler:

    @pytest.mark.asyncio
    async def test_runs_only_due_tasks(self):
        scheduler = TaskScheduler()
        calls = []
        scheduler.add_task("sweep", lambda: calls.append("sweep"), interval_seconds=60, delay_seconds=0)
        scheduler.add_task("later", lambda: calls.append("later"), interval_seconds=60, delay_seconds=600)

        now = datetime.now(timezone.utc) + timedelta(seconds=1)
        assert await scheduler.run_due(now) == 1
        assert calls == ["sweep"]

        status = scheduler.get_status()
        assert status["sweep"]["run_count"] == 1
        assert status["later"]["last_run"] is None

        # Not due again until the interval has passed
        assert await scheduler.run_due(now + timedelta(seconds=30)) == 0
        assert await scheduler.run_due(now + timedelta(seconds=60)) == 1

    @pytest.mark.asyncio
    async def test_failing_task_records_error(self):
        scheduler = TaskScheduler()

        def boom():
            raise RuntimeError("database unavailable")

        scheduler.add_task("sweep", boom, interval_seconds=60, delay_seconds=0)
        await scheduler.run_due(datetime.now(timezone.utc) + timedelta(seconds=1))

        assert scheduler.get_status()["sweep"]["last_error"] == "database unavailable"

    @pytest.mark.asyncio
    async def test_async_tasks_are_awaited(self):
        scheduler = TaskScheduler()
        calls = []

        async def job():
            calls.append(1)

        scheduler.add_task("job", job, interval_seconds=5, delay_seconds=0)
        await scheduler.run_due(datetime.now(timezone.utc) + timedelta(seconds=1))
        assert calls == [1]

    def test_remove_task(self):
        scheduler = TaskScheduler()
        scheduler.add_task("sweep", lambda: None, interval_seconds=60)
        scheduler.remove_task("sweep")
        assert scheduler.get_status() == {}


class TestOverdueInvoiceSweep:

    def test_sweep_uses_its_own_session(self, db_engine, db_session, approved_po, accounts_ctx):
        invoice = PurchaseInvoiceService(db_session).create_manual(accounts_ctx, PurchaseInvoiceCreate(
            purchase_order_id=approved_po.id,
            invoice_date=date.today() - timedelta(days=10),
            due_date=date.today() - timedelta(days=1),
            items=[InvoiceItemCreate(purchase_order_item_id=approved_po.items[0].id, quantity=Decimal("5"))],
        ))

        factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
        assert run_overdue_invoice_sweep(factory) == 1

        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.OVERDUE
