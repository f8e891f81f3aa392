"""Unit tests for learned binding trust, decay and rejection"""

from datetime import timedelta
from uuid import uuid4

from models.base import utcnow
from models.matching_memory import MatchingMemory, MemoryStatus


def new_memory(**kwargs) -> MatchingMemory:
    now = utcnow()
    values = dict(
        id=uuid4(),
        template_id=uuid4(),
        product_id=uuid4(),
        normalized_name="玉溪硬",
        original_name="玉溪硬",
        confidence=100.0,
        source="manual",
        confirm_count=1,
        weight=1.5,
        is_user_preference=False,
        status=MemoryStatus.ACTIVE.value,
        last_confirmed_at=now,
        usage_count=0,
        conflicts=[],
        audit_trail=[],
        related_records=[],
    )
    values.update(kwargs)
    return MatchingMemory(**values)


class TestTrustScore:
    """Test the derived trust score"""

    def test_new_manual_binding_is_fully_trusted(self):
        """Test confidence 100, one confirmation and weight 1.5 clip to 100"""
        assert new_memory().trust_score == 100

    def test_trust_components(self):
        """Test confidence + confirmations + weight bonus"""
        memory = new_memory(confidence=60.0, confirm_count=2, weight=1.0)
        assert memory.trust_score == 70

    def test_confirmation_bonus_is_capped(self):
        """Test confirmations add at most 25"""
        memory = new_memory(confidence=50.0, confirm_count=10, weight=1.0)
        assert memory.trust_score == 75

    def test_high_trust_needs_two_confirmations(self):
        """Test a single confirmation is never high trust"""
        assert new_memory().is_high_trust is False
        assert new_memory(confirm_count=2).is_high_trust is True


class TestTimeDecay:
    """Test the penalty for bindings nobody confirmed recently"""

    def test_no_decay_within_a_month(self):
        """Test bindings confirmed in the last 30 days do not decay"""
        now = utcnow()
        memory = new_memory(last_confirmed_at=now - timedelta(days=30))
        assert memory.time_decay(now) == 0

    def test_decay_after_100_days(self):
        """Test 100 days since confirmation costs 7 points"""
        now = utcnow()
        memory = new_memory(last_confirmed_at=now - timedelta(days=100))
        assert memory.time_decay(now) == 7

    def test_decay_is_capped(self):
        """Test decay never exceeds 20"""
        now = utcnow()
        memory = new_memory(last_confirmed_at=now - timedelta(days=1000))
        assert memory.time_decay(now) == 20

    def test_decay_lowers_trust(self):
        """Test decay is subtracted from the trust score"""
        now = utcnow()
        memory = new_memory(confidence=70.0, weight=1.0, last_confirmed_at=now - timedelta(days=100))
        assert memory.trust_score_at(now) == 68


class TestConfirmation:
    """Test re-confirming a binding"""

    def test_confirmation_counts_usage(self):
        """Test a confirmation is also a use"""
        memory = new_memory().add_confirmation("reviewer-1", task_id="t1", record_id="r1")
        assert memory.confirm_count == 2
        assert memory.usage_count == 1
        assert memory.related_task_ids == ["t1"]
        assert memory.weight == 1.5
        assert memory.is_user_preference is False

    def test_third_confirmation_becomes_preference(self):
        """Test the third confirmation raises the weight and marks a preference"""
        memory = new_memory(confirm_count=2).add_confirmation("reviewer-1")
        assert memory.confirm_count == 3
        assert memory.weight == 1.6
        assert memory.is_user_preference is True
        assert memory.audit_trail[-1]["action"] == "confirmed"


class TestRejection:
    """Test rejecting a binding"""

    def test_rejection_weakens_binding(self):
        """Test weight x0.7 and confidence x0.8"""
        memory = new_memory().apply_rejection("reviewer-1", "wrong product")
        assert memory.weight == 1.05
        assert memory.confidence == 80
        assert memory.status == "active"
        assert memory.rejection_count == 1
        assert memory.conflicts[0]["reason"] == "wrong product"

    def test_third_rejection_conflicts_binding(self):
        """Test three rejections mark the binding conflicted"""
        memory = new_memory()
        for _ in range(3):
            memory.apply_rejection("reviewer-1")
        assert memory.status == "conflicted"
        assert memory.rejection_count == 3

    def test_weight_and_confidence_floors(self):
        """Test weight never drops below 0.1 and confidence below 30"""
        memory = new_memory(weight=0.12, confidence=31.0)
        memory.apply_rejection("reviewer-1")
        assert memory.weight == 0.1
        assert memory.confidence == 30

    def test_logs_are_replaced_not_mutated(self):
        """Test embedded logs get a new list on every change"""
        memory = new_memory()
        before = memory.audit_trail
        memory.apply_rejection("reviewer-1")
        assert memory.audit_trail is not before
        assert before == []
