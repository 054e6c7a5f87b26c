"""
Advancement Engine unit tests.

Tests cover:
  - Create / draft / submit lifecycle
  - Ordered approvals (OutOfOrderApproval, Unauthorized, BU scoping)
  - In-place advancement vs. fork to a new initiator
  - REJECT / REQUEST_REVISION / CANCEL and terminal states
  - Resubmission after revision (ledger reset, history intact)
  - Clarification questions to the section and to the previous section
  - FORM sections, form validator, claiming unassigned forks, comments
"""

import pytest

from approvalflow.core.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    OutOfOrderApprovalError,
    UnauthorizedActionError,
    ValidationError,
)
from approvalflow.models import db
from approvalflow.models.request import Action, HistoryEntry, Request
from approvalflow.models.workflow import WorkflowStep
from approvalflow.services import advancement_engine as engine
from approvalflow.services import ledger
from approvalflow.services.progress_service import (
    get_request_chain,
    get_request_history,
    get_workflow_progress,
)


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture()
def chain(make_chain):
    """Section 0: one step (A). Section 1: two steps (B then C). Same initiator throughout."""
    return make_chain({"steps": ["A"]}, {"steps": ["B", "C"]})


@pytest.fixture()
def forking_chain(make_chain):
    """As ``chain``, but section 1 belongs to the Successor role (held only by sam)."""
    return make_chain({"steps": ["A"]}, {"steps": ["B", "C"], "initiators": ["Successor"]})


@pytest.fixture()
def in_review(chain, new_request):
    req = new_request(chain)
    return engine.submit_request(req.id, "ivan")


@pytest.fixture()
def at_section_one(in_review):
    return engine.act(in_review.id, "alice", "APPROVE")


def _history_actions(request_id):
    return [e["action"] for e in get_request_history(request_id)]


# ═════════════════════════════════════════════════════════════════════════
# CREATE & SUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestCreateAndSubmit:
    def test_create_request_starts_in_draft(self, chain, new_request):
        req = new_request(chain)
        assert req.status == "DRAFT"
        assert req.current_section_order == 0
        assert req.root_request_id == req.id
        assert req.parent_request_id is None
        assert req.version == 1

    def test_create_requires_active_chain(self, make_chain, new_request):
        draft_chain = make_chain({"steps": ["A"]}, activate=False)
        with pytest.raises(ValidationError):
            new_request(draft_chain)

    def test_create_unknown_business_unit(self, chain):
        with pytest.raises(NotFoundError):
            engine.create_request(chain.id, 9999, "ivan")

    def test_create_checks_first_section_initiators(self, make_chain, new_request):
        guarded = make_chain({"kind": "FORM", "initiators": ["Initiator"]}, {"steps": ["A"]})
        assert new_request(guarded, initiator_id="ivan").status == "DRAFT"
        with pytest.raises(UnauthorizedActionError):
            new_request(guarded, initiator_id="bob")

    def test_submit_enters_review(self, in_review):
        assert in_review.status == "IN_REVIEW"
        assert in_review.submitted_at is not None
        assert _history_actions(in_review.id) == ["SUBMIT"]

    def test_submit_by_someone_else(self, chain, new_request):
        req = new_request(chain)
        with pytest.raises(UnauthorizedActionError):
            engine.submit_request(req.id, "bob")
        assert db.session.get(Request, req.id).status == "DRAFT"

    def test_submit_twice(self, in_review):
        with pytest.raises(InvalidTransitionError):
            engine.submit_request(in_review.id, "ivan")

    def test_submit_unknown_request(self, chain):
        with pytest.raises(NotFoundError):
            engine.submit_request("does-not-exist", "ivan")

    def test_save_draft_replaces_data(self, chain, new_request):
        req = new_request(chain)
        req = engine.save_draft(req.id, "ivan", {"amount": 250, "currency": "EUR"})
        assert req.data == {"amount": 250, "currency": "EUR"}
        assert req.version == 2

    def test_save_draft_rejected_once_in_review(self, in_review):
        with pytest.raises(InvalidTransitionError):
            engine.save_draft(in_review.id, "ivan", {"amount": 1})

    def test_form_validator_blocks_submission(self, app, chain, new_request):
        engine.register_form_validator(
            lambda section, data: [] if data.get("amount") else ["amount is required"]
        )
        req = new_request(chain, data={"note": "no amount"})
        with pytest.raises(ValidationError) as exc_info:
            engine.submit_request(req.id, "ivan")
        assert exc_info.value.details == {"errors": ["amount is required"]}
        assert db.session.get(Request, req.id).status == "DRAFT"

        req = engine.submit_request(req.id, "ivan", data={"amount": 10})
        assert req.status == "IN_REVIEW"


# ═════════════════════════════════════════════════════════════════════════
# ORDERED APPROVALS
# ═════════════════════════════════════════════════════════════════════════

class TestOrderedApprovals:
    def test_first_section_advances_in_place(self, at_section_one):
        assert at_section_one.status == "IN_REVIEW"
        assert at_section_one.current_section_order == 1
        progress = get_workflow_progress(at_section_one.id)
        assert progress["waiting_on"] == "B"
        assert progress["current_step"] == 1
        assert progress["sections"][0]["is_completed"] is True

    def test_two_section_chain_same_initiator(self, at_section_one):
        req = engine.act(at_section_one.id, "bob", "APPROVE")
        assert req.status == "IN_REVIEW"
        assert get_workflow_progress(req.id)["waiting_on"] == "C"

        req = engine.act(req.id, "carol", "APPROVE")
        assert req.status == "APPROVED"
        assert req.completed_at is not None
        chain_view = get_request_chain(req.id)
        assert len(chain_view) == 1
        assert chain_view[0]["is_current"] is True

    def test_out_of_order_approval(self, at_section_one):
        version_before = at_section_one.version
        with pytest.raises(OutOfOrderApprovalError) as exc_info:
            engine.act(at_section_one.id, "carol", "APPROVE")
        assert exc_info.value.attempted_step == 2
        assert exc_info.value.pending_step == 1

        req = db.session.get(Request, at_section_one.id)
        assert req.version == version_before
        assert ledger.approved_step_numbers(req) == set()

    def test_non_holder_is_unauthorized(self, at_section_one):
        with pytest.raises(UnauthorizedActionError):
            engine.act(at_section_one.id, "alice", "APPROVE")

    def test_role_holder_from_other_business_unit(self, at_section_one):
        # fred holds B, but only in Finance
        with pytest.raises(UnauthorizedActionError):
            engine.act(at_section_one.id, "fred", "APPROVE")

    def test_organization_wide_role(self, make_chain, new_request):
        audited = make_chain({"steps": ["Auditor"]})
        req = engine.submit_request(new_request(audited).id, "ivan")
        req = engine.act(req.id, "olga", "APPROVE")
        assert req.status == "APPROVED"

    def test_approve_before_submit(self, chain, new_request):
        req = new_request(chain)
        with pytest.raises(InvalidTransitionError):
            engine.act(req.id, "alice", "APPROVE")

    def test_unknown_action(self, in_review):
        with pytest.raises(ValidationError):
            engine.act(in_review.id, "alice", "ESCALATE")

    def test_action_strings_are_parsed(self, in_review):
        req = engine.act(in_review.id, "alice", "approve")
        assert req.current_section_order == 1
        assert Action.parse(" reject ") is Action.REJECT

    def test_history_records_steps(self, at_section_one):
        engine.act(at_section_one.id, "bob", "APPROVE", comment="fine by me")
        entries = get_request_history(at_section_one.id)
        approvals = [e for e in entries if e["action"] == "APPROVE"]
        assert [(e["section_order"], e["step_number"], e["actor_id"]) for e in approvals] == [
            (0, 1, "alice"),
            (1, 1, "bob"),
        ]
        assert approvals[1]["comment"] == "fine by me"
        assert "ADVANCE_SECTION" in [e["action"] for e in entries]


# ═════════════════════════════════════════════════════════════════════════
# FORKING
# ═════════════════════════════════════════════════════════════════════════

class TestFork:
    def test_fork_to_new_initiator(self, forking_chain, new_request):
        parent = engine.submit_request(new_request(forking_chain).id, "ivan")
        parent = engine.act(parent.id, "alice", "APPROVE")

        assert parent.status == "APPROVED"
        assert parent.is_handed_off is True
        assert parent.current_section_order == 0

        child = Request.query.filter_by(parent_request_id=parent.id).one()
        assert child.root_request_id == parent.root_request_id
        assert child.chain_id == parent.chain_id
        assert child.current_section_order == 1
        assert child.initiator_id == "sam"
        assert child.status == "IN_REVIEW"
        assert child.fork_key == f"{forking_chain.id}:{parent.id}:1"
        assert get_workflow_progress(child.id)["waiting_on"] == "B"

        child = engine.act(child.id, "bob", "APPROVE")
        child = engine.act(child.id, "carol", "APPROVE")
        assert child.status == "APPROVED"

        chain_view = get_request_chain(child.id)
        assert [c["request_id"] for c in chain_view] == [parent.id, child.id]
        assert [c["is_current"] for c in chain_view] == [False, True]

    def test_parent_is_terminal_after_hand_off(self, forking_chain, new_request):
        parent = engine.submit_request(new_request(forking_chain).id, "ivan")
        parent = engine.act(parent.id, "alice", "APPROVE")
        with pytest.raises(InvalidTransitionError):
            engine.act(parent.id, "bob", "APPROVE")

    def test_hard_fork_even_for_same_initiator(self, make_chain, new_request):
        hard = make_chain({"steps": ["A"]}, {"steps": ["B"], "hard_fork": True})
        parent = engine.submit_request(new_request(hard).id, "ivan")
        parent = engine.act(parent.id, "alice", "APPROVE")
        assert parent.is_handed_off is True
        child = Request.query.filter_by(parent_request_id=parent.id).one()
        # No initiator roles declared, so nobody is eligible: left unassigned
        assert child.initiator_id is None
        assert child.status == "IN_REVIEW"

    def test_initiator_holding_next_role_continues_in_place(self, make_chain, new_request):
        same = make_chain({"steps": ["A"]}, {"steps": ["B"], "initiators": ["Initiator"]})
        req = engine.submit_request(new_request(same).id, "ivan")
        req = engine.act(req.id, "alice", "APPROVE")
        assert req.is_handed_off is False
        assert req.current_section_order == 1
        assert Request.query.count() == 1

    def test_fork_into_form_section_with_several_candidates(self, make_chain, new_request, directory):
        from approvalflow.services import role_resolver

        role_resolver.assign_role("bob", directory.roles["Successor"])
        db.session.commit()
        chain = make_chain({"steps": ["A"]}, {"kind": "FORM", "initiators": ["Successor"]})
        parent = engine.submit_request(new_request(chain).id, "ivan")
        parent = engine.act(parent.id, "alice", "APPROVE")

        child = Request.query.filter_by(parent_request_id=parent.id).one()
        assert child.status == "DRAFT"
        assert child.initiator_id is None
        assert child.data == {}
        progress = get_workflow_progress(child.id)
        assert progress["awaiting_claim"] is True
        assert progress["is_stalled"] is False

        with pytest.raises(UnauthorizedActionError):
            engine.claim_request(child.id, "carol")
        with pytest.raises(UnauthorizedActionError):
            engine.submit_request(child.id, "sam")

        child = engine.claim_request(child.id, "sam")
        assert child.initiator_id == "sam"
        with pytest.raises(InvalidTransitionError):
            engine.claim_request(child.id, "bob")

        child = engine.submit_request(child.id, "sam", data={"po_number": "PO-1"})
        assert child.status == "APPROVED"
        assert _history_actions(child.id) == ["ADVANCE_SECTION", "CLAIM", "SUBMIT"]

    def test_spawn_child_is_idempotent(self, forking_chain, new_request):
        parent = engine.submit_request(new_request(forking_chain).id, "ivan")
        section = forking_chain.section_at(1)
        first, created_first = engine._spawn_child(parent, section)
        db.session.flush()
        second, created_second = engine._spawn_child(parent, section)
        assert (created_first, created_second) == (True, False)
        assert first.id == second.id
        db.session.rollback()


# ═════════════════════════════════════════════════════════════════════════
# REJECT / REVISION / CANCEL
# ═════════════════════════════════════════════════════════════════════════

class TestRejectReviseCancel:
    @pytest.mark.parametrize("actor,step", [("alice", 0), ("bob", 1)])
    def test_reject_is_terminal(self, in_review, actor, step):
        req = in_review
        if step == 1:
            req = engine.act(req.id, "alice", "APPROVE")
        req = engine.act(req.id, actor, "REJECT", comment="Budget exhausted")
        assert req.status == "REJECTED"
        for follow_up, who in (("APPROVE", "carol"), ("REJECT", actor), ("CANCEL", "ivan")):
            with pytest.raises(InvalidTransitionError):
                engine.act(req.id, who, follow_up)

    def test_reject_requires_current_step_holder(self, at_section_one):
        with pytest.raises(UnauthorizedActionError):
            engine.act(at_section_one.id, "carol", "REJECT")

    def test_revision_round_trip(self, at_section_one):
        req = engine.act(at_section_one.id, "bob", "APPROVE")
        history_before = len(get_request_history(req.id))

        req = engine.act(req.id, "carol", "REQUEST_REVISION", comment="Attach the quote")
        assert req.status == "NEEDS_REVISION"
        assert req.current_section_order == 1

        req = engine.save_draft(req.id, "ivan", {"amount": 90, "quote": "Q-7"})
        req = engine.submit_request(req.id, "ivan")
        assert req.status == "IN_REVIEW"
        assert req.current_section_order == 1
        assert req.review_round == 2
        assert ledger.approved_step_numbers(req) == set()
        assert get_workflow_progress(req.id)["waiting_on"] == "B"

        history = get_request_history(req.id)
        assert len(history) == history_before + 2
        assert HistoryEntry.query.filter_by(request_id=req.id, action="APPROVE").count() == 2

        # Earlier section stays complete; current section starts over
        progress = get_workflow_progress(req.id)
        assert progress["sections"][0]["is_completed"] is True
        assert [s["is_completed"] for s in progress["sections"][1]["steps"]] == [False, False]

        req = engine.act(req.id, "bob", "APPROVE")
        req = engine.act(req.id, "carol", "APPROVE")
        assert req.status == "APPROVED"

    def test_cancel_by_initiator(self, at_section_one):
        req = engine.act(at_section_one.id, "ivan", "CANCEL", comment="No longer needed")
        assert req.status == "CANCELLED"
        with pytest.raises(InvalidTransitionError):
            engine.act(req.id, "bob", "APPROVE")

    def test_cancel_from_draft(self, chain, new_request):
        req = engine.act(new_request(chain).id, "ivan", Action.CANCEL, comment="Raised twice")
        assert req.status == "CANCELLED"

    def test_cancel_by_someone_else(self, in_review):
        # bob approves later steps, not the pending one
        with pytest.raises(UnauthorizedActionError):
            engine.act(in_review.id, "bob", "CANCEL", comment="Not mine to stop")

    @pytest.mark.parametrize("actor,action", [
        ("alice", "REJECT"), ("alice", "REQUEST_REVISION"), ("ivan", "CANCEL"), ("alice", "CANCEL"),
    ])
    def test_reason_is_required(self, in_review, actor, action):
        for blank in (None, "", "   "):
            with pytest.raises(ValidationError) as exc_info:
                engine.act(in_review.id, actor, action, comment=blank)
            assert exc_info.value.details == {"comment": "required"}
        req = db.session.get(Request, in_review.id)
        assert req.status == "IN_REVIEW"
        assert _history_actions(req.id) == ["SUBMIT"]

    def test_cancel_by_pending_approver(self, at_section_one):
        req = engine.act(at_section_one.id, "bob", "CANCEL", comment="Vendor is blocked")
        assert req.status == "CANCELLED"
        entry = get_request_history(req.id)[-1]
        assert (entry["action"], entry["actor_id"], entry["comment"]) == ("CANCEL", "bob", "Vendor is blocked")

    def test_approver_cannot_cancel_outside_review(self, chain, new_request):
        req = new_request(chain)
        with pytest.raises(UnauthorizedActionError):
            engine.act(req.id, "alice", "CANCEL", comment="Too early to tell")

    def test_unassigned_child_can_be_cancelled(self, make_chain, new_request, directory):
        from approvalflow.services import role_resolver

        role_resolver.assign_role("bob", directory.roles["Successor"])
        db.session.commit()
        chain = make_chain({"steps": ["A"]}, {"kind": "FORM", "initiators": ["Successor"]})

        def _unassigned_child():
            parent = engine.submit_request(new_request(chain).id, "ivan")
            engine.act(parent.id, "alice", "APPROVE")
            return Request.query.filter_by(parent_request_id=parent.id).one()

        child = _unassigned_child()
        assert child.initiator_id is None
        with pytest.raises(UnauthorizedActionError):
            engine.act(child.id, "carol", "CANCEL", comment="Not needed")
        child = engine.act(child.id, "sam", "CANCEL", comment="Not needed")
        assert child.status == "CANCELLED"

        child = _unassigned_child()
        child = engine.act(child.id, "ivan", "CANCEL", comment="Raised by mistake")
        assert child.status == "CANCELLED"


# ═════════════════════════════════════════════════════════════════════════
# CLARIFICATION QUESTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestClarification:
    @pytest.mark.parametrize("action", ["REQUEST_CLARIFICATION", "ASK_PREVIOUS_SECTION"])
    def test_question_keeps_request_in_review(self, at_section_one, action):
        version_before = at_section_one.version
        req = engine.act(at_section_one.id, "bob", action, comment="Which budget line?")
        assert req.status == "IN_REVIEW"
        assert req.current_section_order == 1
        assert req.version == version_before + 1
        assert ledger.approved_step_numbers(req) == set()

        entry = get_request_history(req.id)[-1]
        assert (entry["action"], entry["actor_id"], entry["step_number"]) == (action, "bob", 1)
        assert entry["comment"] == "Which budget line?"

        # The pending step is still bob's to approve
        req = engine.act(req.id, "bob", "APPROVE")
        assert get_workflow_progress(req.id)["waiting_on"] == "C"

    @pytest.mark.parametrize("action", ["REQUEST_CLARIFICATION", "ASK_PREVIOUS_SECTION"])
    def test_question_needs_text(self, at_section_one, action):
        with pytest.raises(ValidationError):
            engine.act(at_section_one.id, "bob", action, comment=" ")

    def test_only_pending_approver_may_ask(self, at_section_one):
        for actor in ("carol", "ivan"):
            with pytest.raises(UnauthorizedActionError):
                engine.act(at_section_one.id, actor, "REQUEST_CLARIFICATION", comment="Why?")

    def test_no_previous_section_at_first_section(self, in_review):
        with pytest.raises(InvalidTransitionError):
            engine.act(in_review.id, "alice", "ASK_PREVIOUS_SECTION", comment="Anyone before me?")
        engine.act(in_review.id, "alice", "REQUEST_CLARIFICATION", comment="Anyone else on A?")

    def test_question_outside_review(self, chain, new_request):
        req = new_request(chain)
        with pytest.raises(InvalidTransitionError):
            engine.act(req.id, "alice", "REQUEST_CLARIFICATION", comment="Ready yet?")

    def test_previous_section_participants(self, at_section_one):
        assert ledger.previous_section_participants(at_section_one) == {"ivan", "alice"}


# ═════════════════════════════════════════════════════════════════════════
# FORM SECTIONS, COMMENTS, CONFIGURATION ERRORS
# ═════════════════════════════════════════════════════════════════════════

class TestFormSectionsAndMisc:
    def test_form_first_section_completes_on_submit(self, make_chain, new_request):
        chain = make_chain({"kind": "FORM"}, {"steps": ["A"]}, {"kind": "FORM"})
        req = engine.submit_request(new_request(chain).id, "ivan")
        assert req.status == "IN_REVIEW"
        assert req.current_section_order == 1

        req = engine.act(req.id, "alice", "APPROVE")
        assert req.status == "SUBMITTED"
        assert req.current_section_order == 2

        req = engine.submit_request(req.id, "ivan", data={"delivery": "2026-11-02"})
        assert req.status == "APPROVED"
        assert req.data == {"delivery": "2026-11-02"}

    def test_add_comment_any_state(self, in_review):
        entry = engine.add_comment(in_review.id, "bob", "Looking at it tomorrow")
        assert entry.action == "COMMENT"
        req = engine.act(in_review.id, "ivan", "CANCEL", comment="Duplicate")
        engine.add_comment(req.id, "ivan", "Cancelled by mistake?")
        assert _history_actions(req.id)[-1] == "COMMENT"
        assert req.status == "CANCELLED"

    def test_add_comment_requires_text(self, in_review):
        with pytest.raises(ValidationError):
            engine.add_comment(in_review.id, "bob", "   ")

    def test_add_comment_rolls_back_failed_commit(self, in_review, monkeypatch):
        def _fail(self):
            raise RuntimeError("database went away")

        monkeypatch.setattr(type(db.session()), "commit", _fail)
        with pytest.raises(RuntimeError):
            engine.add_comment(in_review.id, "bob", "Looking at it tomorrow")
        monkeypatch.undo()

        assert HistoryEntry.query.filter_by(request_id=in_review.id, action="COMMENT").count() == 0
        engine.add_comment(in_review.id, "bob", "Second try")
        assert _history_actions(in_review.id)[-1] == "COMMENT"

    def test_corrupted_chain_halts_processing(self, in_review):
        # Break step contiguity behind the store's back
        step = WorkflowStep.query.filter_by(section_id=in_review.chain.section_at(1).id, step_number=2).one()
        step.step_number = 5
        db.session.commit()

        with pytest.raises(ConfigurationError):
            engine.act(in_review.id, "alice", "APPROVE")
        assert db.session.get(Request, in_review.id).current_section_order == 0
