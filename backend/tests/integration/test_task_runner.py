"""Integration tests for the automated matching pass"""

from decimal import Decimal
from uuid import uuid4

import pytest

from matching_tasks.runner import TaskNotFoundError, TaskRunner
from matching_tasks.service import MatchingTaskService
from matching_tasks.status import StateTransitionError
from memory.service import MemoryStore
from models.matching_record import MatchingRecord
from models.product import Product


def submit(db, template_id, names, **kwargs):
    items = [name if isinstance(name, dict) else {"name": name} for name in names]
    return MatchingTaskService.create_task(db, template_id, items, actor_id="submitter", **kwargs)


def records_of(db, task):
    return (
        db.query(MatchingRecord)
        .filter(MatchingRecord.task_id == task.id)
        .order_by(MatchingRecord.row_index)
        .all()
    )


class TestClassification:
    """Test how line items are classified"""

    def test_tolerant_match_auto_confirms(self, db_session, catalog):
        """Test 中华(软) is confirmed automatically"""
        task = submit(db_session, catalog.template_id, ["中华(软)"])
        task = TaskRunner(db_session).run(task.id)

        record = records_of(db_session, task)[0]
        assert task.status == "completed"
        assert record.status == "confirmed"
        assert record.selected_product_id == catalog.zhonghua.id
        assert record.selected_match_type == "auto"
        assert record.selected_confirmed_by == "system"
        assert record.best_score == 97
        assert record.review_history[-1]["note"] == "auto-confirmed"

    def test_low_score_is_low_confidence_exception(self, db_session, catalog):
        """Test 玉溪硬 (62) falls below the review threshold"""
        task = submit(db_session, catalog.template_id, ["玉溪硬"])
        task = TaskRunner(db_session).run(task.id)

        record = records_of(db_session, task)[0]
        assert task.status == "review"
        assert record.status == "exception"
        assert record.exceptions[0]["type"] == "low_confidence"
        assert record.exceptions[0]["severity"] == "medium"
        assert record.best_candidate["product_id"] == str(catalog.yuxi.id)
        assert record.selected_product_id is None

    def test_unrelated_name_has_no_candidates(self, db_session, catalog):
        """Test xyz123 becomes a high-priority no_candidates exception"""
        task = submit(db_session, catalog.template_id, ["xyz123"])
        task = TaskRunner(db_session).run(task.id)

        record = records_of(db_session, task)[0]
        assert record.status == "exception"
        assert record.exceptions[0]["type"] == "no_candidates"
        assert record.priority == "high"
        assert record.candidates == []
        assert record.best_score is None

    def test_threshold_decides_auto_confirmation(self, db_session, catalog):
        """Test a 92 auto-confirms at threshold 90 but stays pending at 95"""
        default = submit(db_session, catalog.template_id, ["黄鹤楼天下名烟"])
        strict = submit(db_session, catalog.template_id, ["黄鹤楼天下名烟"], auto_confirm_threshold=95)

        TaskRunner(db_session).run(default.id)
        TaskRunner(db_session).run(strict.id)

        assert records_of(db_session, default)[0].status == "confirmed"
        pending = records_of(db_session, strict)[0]
        assert pending.status == "pending"
        assert pending.selected_is_suggestion is True
        assert pending.selected_product_id == catalog.huanghelou.id

    def test_tier_measured_against_task_threshold(self, db_session, catalog):
        """Test a score just below a raised threshold is not treated as high tier"""
        task = submit(db_session, catalog.template_id, ["黄鹤楼天下名烟"], auto_confirm_threshold=94)
        TaskRunner(db_session).run(task.id)
        assert records_of(db_session, task)[0].status == "pending"

        lenient = submit(db_session, catalog.template_id, ["中华(软)"], auto_confirm_threshold=100)
        TaskRunner(db_session).run(lenient.id)
        assert records_of(db_session, lenient)[0].status == "pending"

    def test_malformed_item_is_parsing_error(self, db_session, catalog):
        """Test a row without a name becomes a parsing_error exception"""
        task = submit(db_session, catalog.template_id, [{"price": 10}, "中华(软)"])
        task = TaskRunner(db_session).run(task.id)

        malformed, valid = records_of(db_session, task)
        assert malformed.status == "exception"
        assert malformed.exceptions[0]["type"] == "parsing_error"
        assert malformed.priority == "high"
        assert valid.status == "confirmed"

    @pytest.mark.parametrize("row", [
        {"name": "中华(软)", "price": "NaN"},
        {"name": "中华(软)", "price": "sNaN"},
        {"name": "中华(软)", "price": "inf"},
        {"name": "中华(软)", "quantity": "inf"},
    ])
    def test_non_finite_number_is_parsing_error(self, db_session, catalog, row):
        """Test NaN and infinite values are parsing errors, not processing errors"""
        task = submit(db_session, catalog.template_id, [row, "玉溪硬"])
        task = TaskRunner(db_session).run(task.id)

        malformed, valid = records_of(db_session, task)
        assert malformed.status == "exception"
        assert [e["type"] for e in malformed.exceptions] == ["parsing_error"]
        assert valid.exceptions[0]["type"] == "low_confidence"

    def test_trusted_memory_overrides_binding_conflict(self, db_session, catalog):
        """Test a well-confirmed learned binding is confirmed despite another confirmed name"""
        earlier = submit(db_session, catalog.template_id, ["中华(软)"])
        TaskRunner(db_session).run(earlier.id)
        store = MemoryStore(db_session)
        for reviewer in ("reviewer-1", "reviewer-2", "reviewer-3"):
            store.learn("芙蓉王", catalog.zhonghua.id, catalog.template_id, reviewer)

        task = submit(db_session, catalog.template_id, ["芙蓉王"])
        task = TaskRunner(db_session).run(task.id)

        record = records_of(db_session, task)[0]
        assert record.status == "confirmed"
        assert record.selected_product_id == catalog.zhonghua.id
        assert record.selected_match_type == "memory"
        assert record.review_history[-1]["details"]["conflict_overridden"] is True
        assert record.exceptions == []

    def test_weak_memory_with_binding_conflict_is_held(self, db_session, catalog):
        """Test a single low-confidence learned binding is only suggested when it conflicts"""
        earlier = submit(db_session, catalog.template_id, ["中华(软)"])
        TaskRunner(db_session).run(earlier.id)
        MemoryStore(db_session).learn("芙蓉王", catalog.zhonghua.id, catalog.template_id, "reviewer-1", confidence=70)

        task = submit(db_session, catalog.template_id, ["芙蓉王"])
        task = TaskRunner(db_session).run(task.id)

        record = records_of(db_session, task)[0]
        assert record.status == "pending"
        assert record.selected_is_suggestion is True
        assert record.selected_is_memory_match is True
        assert record.selected_product_id == catalog.zhonghua.id
        assert record.exceptions[0]["type"] == "duplicate_name"
        assert task.status == "review"

    def test_second_name_for_same_product_is_held_for_review(self, db_session, catalog):
        """Test a different name bound to an already confirmed product is not auto-confirmed"""
        task = submit(db_session, catalog.template_id, ["中华(软)", "中华软包"])
        task = TaskRunner(db_session).run(task.id)

        first, second = records_of(db_session, task)
        assert first.status == "confirmed"
        assert second.status == "pending"
        assert second.exceptions[0]["type"] == "duplicate_name"
        assert second.exceptions[0]["severity"] == "low"
        assert task.status == "review"


class TestTaskAccounting:
    """Test task counters and statistics"""

    def test_counters_add_up(self, db_session, catalog):
        """Test processed equals the sum of the status counters"""
        task = submit(
            db_session,
            catalog.template_id,
            ["中华(软)", "玉溪硬", "xyz123", {"price": 3}, "黄鹤楼天下名烟"],
            auto_confirm_threshold=95,
        )
        task = TaskRunner(db_session, progress_batch_size=2).run(task.id)

        assert task.total_items == 5
        assert task.processed_items == 5
        assert task.processed_items == (
            task.confirmed_items + task.pending_items + task.rejected_items + task.exception_items
        )
        assert task.confirmed_items == 1
        assert task.pending_items == 1
        assert task.exception_items == 3
        assert task.match_rate == 40.0
        assert task.average_confidence == pytest.approx((97 + 62 + 92) / 3, abs=0.01)
        assert task.matching_ms is not None
        assert task.completed_at is not None

    def test_record_statistics(self, db_session, catalog):
        """Test statistics by status and exception type"""
        task = submit(db_session, catalog.template_id, ["中华(软)", "玉溪硬", "xyz123"])
        TaskRunner(db_session).run(task.id)

        stats = MatchingTaskService.record_statistics(db_session, task.id)
        assert stats["total"] == 3
        assert stats["by_status"]["confirmed"] == 1
        assert stats["by_status"]["exception"] == 2
        assert stats["by_exception_type"] == {"low_confidence": 1, "no_candidates": 1}
        assert stats["by_priority"] == {"medium": 1, "high": 1}
        assert stats["needs_review"] == 2


class TestPricePropagation:
    """Test wholesale prices written back on confirmation"""

    def test_confirmed_price_reaches_product(self, db_session, catalog):
        """Test the wholesale price of an auto-confirmed item is stored on the product"""
        task = submit(db_session, catalog.template_id, [{"name": "中华(软)", "price": "45"}])
        TaskRunner(db_session).run(task.id)

        product = db_session.get(Product, catalog.zhonghua.id)
        db_session.refresh(product)
        record = records_of(db_session, task)[0]
        assert product.wholesale_price == Decimal("45")
        assert product.wholesale_name == "中华(软)"
        assert product.wholesale_unit == "元/条"
        assert product.wholesale_source == "matching"
        assert product.last_matching_record_id == record.id

    def test_item_without_price_leaves_product(self, db_session, catalog):
        """Test nothing is written without a price"""
        task = submit(db_session, catalog.template_id, ["中华(软)"])
        TaskRunner(db_session).run(task.id)

        product = db_session.get(Product, catalog.zhonghua.id)
        db_session.refresh(product)
        assert product.wholesale_price is None


class TestTaskFailures:
    """Test catalog failures, retry and lifecycle guards"""

    def test_empty_catalog_fails_then_retry_succeeds(self, db_session, template):
        """Test an empty catalog fails the task and a retry runs it again"""
        task = submit(db_session, template.id, ["中华(软)"])
        task = TaskRunner(db_session).run(task.id)

        assert task.status == "failed"
        assert "no active products" in task.error_message
        assert records_of(db_session, task) == []

        db_session.add(Product(id=uuid4(), template_id=template.id, name="中华(软盒)", brand="中华", keywords=[]))
        db_session.commit()

        MatchingTaskService.retry_task(db_session, task.id)
        assert task.status == "pending"
        assert task.retry_count == 1

        task = TaskRunner(db_session).run(task.id)
        assert task.status == "completed"
        assert task.error_message is None
        assert len(records_of(db_session, task)) == 1

    def test_retry_requires_failed_task(self, db_session, catalog):
        """Test only failed tasks can be retried"""
        task = submit(db_session, catalog.template_id, ["中华(软)"])
        with pytest.raises(StateTransitionError):
            MatchingTaskService.retry_task(db_session, task.id)

    def test_completed_task_cannot_run_again(self, db_session, catalog):
        """Test the runner refuses tasks past processing"""
        task = submit(db_session, catalog.template_id, ["中华(软)"])
        TaskRunner(db_session).run(task.id)
        with pytest.raises(StateTransitionError):
            TaskRunner(db_session).run(task.id)

    def test_unknown_task(self, db_session):
        """Test running a missing task"""
        with pytest.raises(TaskNotFoundError):
            TaskRunner(db_session).run(uuid4())

    def test_input_artifact_removed(self, db_session, catalog, tmp_path):
        """Test the temporary input file is deleted after processing"""
        artifact = tmp_path / "upload.json"
        artifact.write_text("[]", encoding="utf-8")
        task = submit(db_session, catalog.template_id, ["中华(软)"], artifact_path=str(artifact))

        task = TaskRunner(db_session).run(task.id)

        assert not artifact.exists()
        assert task.source_path is None

    def test_artifact_removed_on_failure(self, db_session, template, tmp_path):
        """Test the temporary input file is deleted when the task fails"""
        artifact = tmp_path / "upload.json"
        artifact.write_text("[]", encoding="utf-8")
        task = submit(db_session, template.id, ["中华(软)"], artifact_path=str(artifact))

        task = TaskRunner(db_session).run(task.id)

        assert task.status == "failed"
        assert not artifact.exists()

    def test_resume_skips_recorded_rows(self, db_session, catalog):
        """Test rows recorded by an interrupted run are not matched again"""
        task = submit(db_session, catalog.template_id, ["中华(软)", "玉溪硬"])
        MatchingTaskService.start_task(db_session, task.id)
        db_session.add(MatchingRecord(
            id=uuid4(), task_id=task.id, row_index=0, original_name="中华(软)",
            normalized_name="中华软", status="rejected", candidates=[], exceptions=[],
            review_history=[], raw_data={"name": "中华(软)"},
        ))
        db_session.commit()

        task = TaskRunner(db_session).run(task.id)

        records = records_of(db_session, task)
        assert [r.status for r in records] == ["rejected", "exception"]
        assert task.processed_items == 2

    def test_thresholds_validated(self, db_session, catalog):
        """Test the review threshold cannot exceed the auto-confirm threshold"""
        from matching_tasks.service import TaskServiceError

        with pytest.raises(TaskServiceError):
            submit(db_session, catalog.template_id, ["中华"], review_threshold=95, auto_confirm_threshold=90)

    def test_template_must_exist(self, db_session):
        """Test submitting against a missing template"""
        from catalog.service import TemplateNotFoundError

        with pytest.raises(TemplateNotFoundError):
            submit(db_session, uuid4(), ["中华"])

    def test_delete_processing_task_refused(self, db_session, catalog):
        """Test a processing task cannot be deleted"""
        from matching_tasks.service import TaskServiceError

        task = submit(db_session, catalog.template_id, ["中华"])
        MatchingTaskService.start_task(db_session, task.id)
        with pytest.raises(TaskServiceError):
            MatchingTaskService.delete_task(db_session, task.id)

