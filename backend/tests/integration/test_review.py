"""Integration tests for human review and the learning loop"""

from uuid import uuid4

import pytest

from matching_tasks.review import ReviewError, ReviewService
from matching_tasks.runner import TaskRunner
from matching_tasks.service import MatchingTaskService
from memory.service import MemoryStore, MemoryStoreError
from models.matching_memory import MatchingMemory
from models.matching_record import MatchingRecord, ReviewAction
from models.product import Product


def run_task(db, template_id, names, **kwargs):
    task = MatchingTaskService.create_task(
        db, template_id, [{"name": name} for name in names], actor_id="submitter", **kwargs
    )
    return TaskRunner(db).run(task.id)


def first_record(db, task) -> MatchingRecord:
    return (
        db.query(MatchingRecord)
        .filter(MatchingRecord.task_id == task.id)
        .order_by(MatchingRecord.row_index)
        .first()
    )


class TestConfirm:
    """Test manual confirmation"""

    def test_confirm_settles_task(self, db_session, catalog):
        """Test confirming the only open record completes the task"""
        task = run_task(db_session, catalog.template_id, ["玉溪硬"])
        assert task.status == "review"
        record = first_record(db_session, task)

        confirmed = ReviewService(db_session).confirm(record.id, catalog.yuxi.id, "reviewer-1", note="包装不同")

        db_session.refresh(task)
        assert confirmed.status == "confirmed"
        assert confirmed.selected_match_type == "manual"
        assert confirmed.selected_confirmed_by == "reviewer-1"
        assert confirmed.selected_confidence == 62
        assert confirmed.review_history[-1]["action"] == "confirm"
        assert confirmed.review_history[-1]["previous_status"] == "exception"
        assert task.status == "completed"
        assert task.confirmed_items == 1
        assert task.exception_items == 0
        assert task.match_rate == 100.0

    def test_confirm_without_remember_learns_nothing(self, db_session, catalog):
        """Test memory is only written when asked to"""
        task = run_task(db_session, catalog.template_id, ["玉溪硬"])
        record = first_record(db_session, task)
        ReviewService(db_session).confirm(record.id, catalog.yuxi.id, "reviewer-1")
        assert db_session.query(MatchingMemory).count() == 0

    def test_confirm_unproposed_product_adds_manual_candidate(self, db_session, catalog):
        """Test a product the matcher never proposed is inserted as a candidate"""
        task = run_task(db_session, catalog.template_id, ["xyz123"])
        record = first_record(db_session, task)

        confirmed = ReviewService(db_session).confirm(record.id, catalog.zhonghua.id, "reviewer-1")

        assert confirmed.candidates[0]["product_id"] == str(catalog.zhonghua.id)
        assert confirmed.candidates[0]["score"]["strategy"] == "manual_selection"
        assert confirmed.selected_confidence == 100

    def test_confirm_product_from_other_template(self, db_session, catalog):
        """Test products outside the task's template are refused"""
        from models.product import ProductTemplate

        other = ProductTemplate(id=uuid4(), name="另一个目录", active=True)
        stranger = Product(id=uuid4(), template_id=other.id, name="玉溪(软)", brand="玉溪", keywords=[])
        db_session.add_all([other, stranger])
        db_session.commit()

        task = run_task(db_session, catalog.template_id, ["玉溪硬"])
        record = first_record(db_session, task)
        with pytest.raises(ReviewError):
            ReviewService(db_session).confirm(record.id, stranger.id, "reviewer-1")

    def test_confirm_propagates_price(self, db_session, catalog):
        """Test a manual confirmation writes the wholesale price back"""
        task = MatchingTaskService.create_task(
            db_session, catalog.template_id, [{"name": "玉溪硬", "price": "23", "unit": "条"}],
        )
        TaskRunner(db_session).run(task.id)
        record = first_record(db_session, task)

        ReviewService(db_session).confirm(record.id, catalog.yuxi.id, "reviewer-1")

        product = db_session.get(Product, catalog.yuxi.id)
        db_session.refresh(product)
        assert float(product.wholesale_price) == 23.0
        assert product.wholesale_unit == "条"


class TestLearningLoop:
    """Test that reviewer decisions are reused by later tasks"""

    def test_remembered_binding_auto_confirms_next_task(self, db_session, catalog):
        """Test confirm with remember turns the next identical name into a memory match"""
        first = run_task(db_session, catalog.template_id, ["玉溪硬"])
        record = first_record(db_session, first)
        ReviewService(db_session).confirm(record.id, catalog.yuxi.id, "reviewer-1", remember=True)

        memory = db_session.query(MatchingMemory).one()
        assert memory.normalized_name == "玉溪硬"
        assert memory.source == "manual"
        assert memory.related_task_ids == [str(first.id)]

        second = run_task(db_session, catalog.template_id, ["玉溪 (硬)"])
        matched = first_record(db_session, second)

        assert second.status == "completed"
        assert matched.status == "confirmed"
        assert matched.selected_product_id == catalog.yuxi.id
        assert matched.selected_match_type == "memory"
        assert matched.selected_is_memory_match is True
        assert matched.candidates[0]["memory_source"]["memory_id"] == str(memory.id)

        db_session.refresh(memory)
        assert memory.usage_count == 2
        assert memory.confirm_count == 1

    def test_rejecting_memory_selection_weakens_binding(self, db_session, catalog):
        """Test rejecting a memory-based confirmation rejects the binding"""
        first = run_task(db_session, catalog.template_id, ["玉溪硬"])
        ReviewService(db_session).confirm(
            first_record(db_session, first).id, catalog.yuxi.id, "reviewer-1", remember=True
        )
        second = run_task(db_session, catalog.template_id, ["玉溪硬"])
        record = first_record(db_session, second)

        rejected = ReviewService(db_session).reject(record.id, "reviewer-2", note="不是这个")

        memory = db_session.query(MatchingMemory).one()
        db_session.refresh(memory)
        assert rejected.status == "rejected"
        assert memory.weight == 1.05
        assert memory.confidence == 80
        assert memory.conflicts[0]["reason"] == "不是这个"

    def test_failed_learning_keeps_confirmation(self, db_session, catalog, monkeypatch):
        """Test a binding that cannot be stored leaves the confirmation and a history note"""
        store = MemoryStore(db_session)

        def refuse(*args, **kwargs):
            raise MemoryStoreError("Could not store binding for '玉溪硬' after a concurrent write")

        monkeypatch.setattr(store, "learn", refuse)
        task = run_task(db_session, catalog.template_id, ["玉溪硬"])
        record = first_record(db_session, task)

        confirmed = ReviewService(db_session, memory_store=store).confirm(
            record.id, catalog.yuxi.id, "reviewer-1", remember=True
        )

        db_session.refresh(task)
        assert confirmed.status == "confirmed"
        assert confirmed.selected_product_id == catalog.yuxi.id
        assert [h["action"] for h in confirmed.review_history] == ["confirm", "comment"]
        assert confirmed.review_history[-1]["note"] == "binding not remembered"
        assert task.status == "completed"
        assert db_session.query(MatchingMemory).count() == 0

    def test_changing_confirmed_product_relearns(self, db_session, catalog):
        """Test re-confirming a different product replaces the learned binding"""
        task = run_task(db_session, catalog.template_id, ["玉溪硬"])
        record = first_record(db_session, task)
        service = ReviewService(db_session)
        service.confirm(record.id, catalog.zhonghua.id, "reviewer-1", remember=True)
        service.confirm(record.id, catalog.yuxi.id, "reviewer-1", remember=True)

        active = db_session.query(MatchingMemory).filter(MatchingMemory.status == "active").all()
        assert [m.product_id for m in active] == [catalog.yuxi.id]
        deprecated = db_session.query(MatchingMemory).filter(MatchingMemory.status == "deprecated").one()
        assert deprecated.product_id == catalog.zhonghua.id
        assert deprecated.rejection_count == 1


class TestRejectClearAndBatch:
    """Test rejection, clearing and batch review"""

    def test_reject_then_clear_reopens(self, db_session, catalog):
        """Test clearing puts a record back into the review queue"""
        task = run_task(db_session, catalog.template_id, ["玉溪硬"])
        record = first_record(db_session, task)
        service = ReviewService(db_session)

        service.reject(record.id, "reviewer-1")
        db_session.refresh(task)
        assert task.status == "completed"
        assert task.rejected_items == 1

        cleared = service.clear(record.id, "reviewer-1")
        db_session.refresh(task)
        assert cleared.status == "pending"
        assert cleared.selected_product_id is None
        assert [h["action"] for h in cleared.review_history] == ["reject", "clear"]
        assert task.status == "review"

    def test_batch_confirm_uses_best_candidate(self, db_session, catalog):
        """Test batch confirmation falls back to the best candidate and reports failures"""
        task = run_task(db_session, catalog.template_id, ["玉溪硬", "xyz123"])
        records = (
            db_session.query(MatchingRecord)
            .filter(MatchingRecord.task_id == task.id)
            .order_by(MatchingRecord.row_index)
            .all()
        )
        yuxi_record_id, unmatched_id = records[0].id, records[1].id

        result = ReviewService(db_session).batch_review(
            [yuxi_record_id, unmatched_id, uuid4()], ReviewAction.CONFIRM, "reviewer-1",
        )

        assert result.succeeded == [str(yuxi_record_id)]
        assert len(result.failed) == 2
        assert db_session.get(MatchingRecord, yuxi_record_id).selected_product_id == catalog.yuxi.id

    def test_pending_reviews_by_priority(self, db_session, catalog):
        """Test high-priority records come first"""
        run_task(db_session, catalog.template_id, ["玉溪硬", "xyz123"])

        records, total = ReviewService(db_session).pending_reviews(sort="priority")

        assert total == 2
        assert [r.original_name for r in records] == ["xyz123", "玉溪硬"]

    def test_pending_reviews_unknown_sort(self, db_session):
        """Test an unknown sort is refused"""
        with pytest.raises(ReviewError):
            ReviewService(db_session).pending_reviews(sort="random")

    def test_pending_task_cannot_be_reviewed(self, db_session, catalog):
        """Test records of a task that has not started are read-only"""
        task = MatchingTaskService.create_task(db_session, catalog.template_id, [{"name": "玉溪硬"}])
        record = MatchingRecord(
            id=uuid4(), task_id=task.id, row_index=0, original_name="玉溪硬", normalized_name="玉溪硬",
            candidates=[], exceptions=[], review_history=[], raw_data={},
        )
        db_session.add(record)
        db_session.commit()

        with pytest.raises(ReviewError):
            ReviewService(db_session).reject(record.id, "reviewer-1")
