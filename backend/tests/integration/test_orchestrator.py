"""Integration tests for candidate generation and binding conflicts"""

from uuid import uuid4

from catalog.service import SqlCatalogSource
from matching.conflicts import BindingConflictDetector
from matching.orchestrator import MatchingOrchestrator, memory_candidate_score
from matching.ports import WholesaleLineItem
from memory.service import MemoryStore
from models.base import utcnow
from models.matching_record import MatchingRecord, MatchType
from models.product import Product
from models.matching_task import MatchingTask


def snapshot(db, catalog):
    return SqlCatalogSource(db).load_active_catalog(catalog.template_id)


class TestMatchingOrchestrator:
    """Test ranking of memory and scored candidates"""

    def test_scored_candidates_above_floor(self, db_session, catalog):
        """Test brand conflicts fall below the floor and are dropped"""
        orchestrator = MatchingOrchestrator(MemoryStore(db_session))
        candidates = orchestrator.match(
            WholesaleLineItem(name="中华(软)"), snapshot(db_session, catalog), catalog.template_id,
        )

        assert [c.product_id for c in candidates] == [catalog.zhonghua.id]
        assert candidates[0].rank == 1
        assert candidates[0].total == 97
        assert candidates[0].is_memory_match is False

    def test_no_candidates_for_unrelated_name(self, db_session, catalog):
        """Test an unrelated name yields nothing"""
        orchestrator = MatchingOrchestrator(MemoryStore(db_session))
        assert orchestrator.match(
            WholesaleLineItem(name="xyz123"), snapshot(db_session, catalog), catalog.template_id,
        ) == []

    def test_memory_candidate_ranked_first(self, db_session, catalog):
        """Test a learned binding is proposed first with a boosted score"""
        store = MemoryStore(db_session)
        store.learn("玉溪硬", catalog.yuxi.id, catalog.template_id, "reviewer-1")

        candidates = MatchingOrchestrator(store).match(
            WholesaleLineItem(name="玉溪（硬）"), snapshot(db_session, catalog), catalog.template_id,
        )

        assert candidates[0].product_id == catalog.yuxi.id
        assert candidates[0].is_memory_match is True
        assert candidates[0].total == 100
        assert candidates[0].score.strategy == "memory"
        assert candidates[0].memory_source.confirm_count == 1
        # The memory product is not scored a second time
        assert [c.product_id for c in candidates].count(catalog.yuxi.id) == 1

    def test_memory_for_inactive_product_ignored(self, db_session, catalog):
        """Test bindings to products outside the snapshot are skipped"""
        store = MemoryStore(db_session)
        store.learn("玉溪硬", catalog.yuxi.id, catalog.template_id, "reviewer-1")
        catalog.yuxi.active = False
        db_session.commit()

        candidates = MatchingOrchestrator(store).match(
            WholesaleLineItem(name="玉溪硬"), snapshot(db_session, catalog), catalog.template_id,
        )
        assert all(not c.is_memory_match for c in candidates)

    def test_without_memory_store(self, db_session, catalog):
        """Test similarity-only matching"""
        candidates = MatchingOrchestrator().match(
            WholesaleLineItem(name="黄鹤楼天下名烟"), snapshot(db_session, catalog), catalog.template_id,
        )
        assert candidates[0].product_id == catalog.huanghelou.id
        assert candidates[0].total == 92

    def test_max_candidates(self, db_session, catalog):
        """Test the candidate list is truncated"""
        for suffix in ("细支", "硬盒", "金中支"):
            db_session.add(Product(
                id=uuid4(), template_id=catalog.template_id, name=f"中华{suffix}", brand="中华", keywords=[],
            ))
        db_session.commit()
        candidates = MatchingOrchestrator(max_candidates=2).match(
            WholesaleLineItem(name="中华"), snapshot(db_session, catalog), catalog.template_id,
        )
        assert len(candidates) == 2
        assert [c.rank for c in candidates] == [1, 2]

    def test_memory_candidate_score(self):
        """Test the memory boost formula"""
        assert memory_candidate_score(100, 1) == 100
        assert memory_candidate_score(50, 1) == 80
        assert memory_candidate_score(70, 2) == 91


class TestBindingConflictDetector:
    """Test binding conflict checks against confirmed records"""

    def _confirmed_record(self, db, task, product_id, name):
        record = MatchingRecord(
            id=uuid4(),
            task_id=task.id,
            row_index=0,
            original_name=name,
            normalized_name=name,
            candidates=[],
            exceptions=[],
            review_history=[],
            raw_data={},
        )
        record.confirm(product_id, 97.0, "system", MatchType.AUTO, at=utcnow())
        db.add(record)
        db.commit()
        return record

    def _task(self, db, catalog):
        task = MatchingTask(id=uuid4(), template_id=catalog.template_id, input_items=[])
        db.add(task)
        db.commit()
        return task

    def test_no_history(self, db_session, catalog):
        """Test a product never confirmed has no conflict"""
        detector = BindingConflictDetector(db_session)
        assert detector.has_binding_conflict(catalog.zhonghua.id, None, "中华软盒") is False

    def test_unrelated_name_conflicts_globally(self, db_session, catalog):
        """Test an unrelated name conflicts with the latest confirmation"""
        task = self._task(db_session, catalog)
        self._confirmed_record(db_session, task, catalog.zhonghua.id, "中华软盒")

        detector = BindingConflictDetector(db_session)
        assert detector.has_binding_conflict(catalog.zhonghua.id, None, "玉溪硬") is True

    def test_same_or_contained_name_is_safe(self, db_session, catalog):
        """Test identical and contained names never conflict"""
        task = self._task(db_session, catalog)
        self._confirmed_record(db_session, task, catalog.zhonghua.id, "中华软盒")

        detector = BindingConflictDetector(db_session)
        assert detector.has_binding_conflict(catalog.zhonghua.id, None, "中华(软盒)") is False
        assert detector.has_binding_conflict(catalog.zhonghua.id, None, "中华软") is False

    def test_same_task_different_name_conflicts(self, db_session, catalog):
        """Test another name confirmed in the same task conflicts"""
        task = self._task(db_session, catalog)
        self._confirmed_record(db_session, task, catalog.zhonghua.id, "中华软")

        detector = BindingConflictDetector(db_session)
        assert detector.has_binding_conflict(catalog.zhonghua.id, task.id, "中华软包") is True
        assert detector.has_binding_conflict(catalog.zhonghua.id, task.id, "中华(软)") is False

