"""
Tests for the authorization engine operations.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import invite, register_with_code
from tiervault.access import (
    AccessCodeRequired,
    AccessType,
    DuplicateIdentity,
    Forbidden,
    InsufficientAuthority,
    InvalidOrExpiredCode,
    InvalidParameter,
    NotFound,
    Unauthenticated,
)


def upload(engine, user, min_tier, name="report.pdf", content=b"%PDF-1.7 data", **extra):
    request = {"file_name": name, "content": content, "minimum_tier_level": min_tier}
    request.update(extra)
    return engine.upload_document(user.user_id, request)


class TestRegistration:
    """Bootstrap and access-code admission."""

    def test_first_user_becomes_root(self, engine, alice):
        """Scenario A: empty system admits one user at tier 1."""
        assert alice.tier_level == 1
        assert alice.parent_user_id is None
        assert alice.department == "Ops"

    def test_second_user_without_code_rejected(self, engine, alice):
        """Scenario A: once a user exists an access code is required."""
        with pytest.raises(AccessCodeRequired):
            engine.register({
                "username": "mallory",
                "password": "Passw0rd!",
                "email": "m@x.com",
                "full_name": "Mallory",
            })

    def test_root_department_defaults(self, engine, settings):
        """Bootstrap user without a department gets the configured default."""
        result = engine.register({
            "username": "root",
            "password": "Passw0rd!",
            "email": "r@x.com",
            "full_name": "Root",
        })
        assert result.user.department == settings.default_department

    def test_duplicate_username(self, engine, alice):
        """Taken usernames fail before the code is considered."""
        with pytest.raises(DuplicateIdentity):
            engine.register({
                "username": "alice",
                "password": "Passw0rd!",
                "email": "a2@x.com",
                "full_name": "Alice Two",
                "access_code": "WHATEVER",
            })

    def test_multi_use_code_budget(self, engine, alice):
        """Scenario B: a two-use code admits two users then stops."""
        code = engine.generate_access_code(
            alice.user_id, {"target_tier_level": 3, "max_uses": 2, "expiry_days": 30}
        )

        bob = register_with_code(engine, "bob", code.code)
        assert bob.tier_level == 3
        assert bob.parent_user_id == alice.user_id
        assert bob.department == "Ops"
        assert engine.codes.get_code(code.code).current_uses == 1

        register_with_code(engine, "carol", code.code)
        stored = engine.codes.get_code(code.code)
        assert stored.current_uses == 2
        assert stored.is_used

        with pytest.raises(InvalidOrExpiredCode):
            register_with_code(engine, "dave", code.code)
        assert engine.identities.get_user_by_username("dave") is None

    def test_each_redemption_recorded(self, engine, alice):
        """Every use of a multi-use code keeps its own redemption record."""
        code = engine.generate_access_code(alice.user_id, {"target_tier_level": 2, "max_uses": 3})
        bob = register_with_code(engine, "bob", code.code)
        carol = register_with_code(engine, "carol", code.code)

        records = engine.list_access_codes(alice.user_id)
        assert len(records) == 1
        assert {r.user_id for r in records[0].redemptions} == {bob.user_id, carol.user_id}
        assert records[0].access_code.used_by_user_id == carol.user_id

    def test_unknown_code(self, engine, alice):
        with pytest.raises(InvalidOrExpiredCode):
            register_with_code(engine, "bob", "NOPE2345")

    def test_expired_code(self, engine, alice, clock):
        """Codes stop admitting users at their expiry instant."""
        code = engine.generate_access_code(alice.user_id, {"target_tier_level": 2, "expiry_days": 1})
        clock.advance(days=1)
        with pytest.raises(InvalidOrExpiredCode):
            register_with_code(engine, "bob", code.code)

    def test_code_is_case_insensitive(self, engine, alice):
        code = engine.generate_access_code(alice.user_id, {"target_tier_level": 2})
        bob = register_with_code(engine, "bob", f"  {code.code.lower()} ")
        assert bob.tier_level == 2

    def test_invalid_request_rejected(self, engine):
        """Validation failures name the offending field."""
        with pytest.raises(InvalidParameter, match="email"):
            engine.register({
                "username": "alice",
                "password": "Passw0rd!",
                "email": "not-an-email",
                "full_name": "Alice",
            })

    def test_register_returns_usable_token(self, engine):
        result = engine.register({
            "username": "alice",
            "password": "Passw0rd!",
            "email": "a@x.com",
            "full_name": "Alice",
        })
        claims = engine.tokens.verify(result.token)
        assert claims.user_id == result.user.user_id
        assert claims.tier_level == 1


class TestAccessCodeIssuance:
    """Minting invitation codes."""

    def test_tier_monotonicity(self, engine, alice):
        """Scenario C: tier 3 cannot mint for tier 2 but can for tier 5."""
        bob = invite(engine, alice, 3, "bob")

        with pytest.raises(InsufficientAuthority):
            engine.generate_access_code(bob.user_id, {"target_tier_level": 2})

        code = engine.generate_access_code(bob.user_id, {"target_tier_level": 5})
        assert code.target_tier_level == 5
        assert code.issuer_id == bob.user_id

    @pytest.mark.parametrize("target", [-1, 0, 1, 2, 3])
    def test_same_or_higher_tier_rejected(self, engine, alice, target):
        """Targets at or above the issuer's authority always fail."""
        bob = invite(engine, alice, 3, "bob")
        with pytest.raises(InsufficientAuthority):
            engine.generate_access_code(bob.user_id, {"target_tier_level": target})

    @pytest.mark.parametrize("target", [4, 7, 10])
    def test_lower_tier_accepted(self, engine, alice, target):
        bob = invite(engine, alice, 3, "bob")
        assert engine.generate_access_code(bob.user_id, {"target_tier_level": target})

    def test_defaults(self, engine, alice, clock):
        code = engine.generate_access_code(alice.user_id, {"target_tier_level": 2})
        assert code.max_uses == 1
        assert code.current_uses == 0
        assert not code.is_used
        assert code.department == "Ops"
        assert (code.expiry_date - clock.now).days == 30
        assert len(code.code) == 8

    def test_unknown_issuer(self, engine):
        with pytest.raises(NotFound):
            engine.generate_access_code("missing", {"target_tier_level": 2})

    @pytest.mark.parametrize("request_body", [
        {"target_tier_level": 11},
        {"target_tier_level": 2, "max_uses": 0},
        {"target_tier_level": 2, "max_uses": 1001},
        {"target_tier_level": 2, "expiry_days": 0},
        {"target_tier_level": 2, "expiry_days": 366},
    ])
    def test_out_of_range_parameters(self, engine, alice, request_body):
        with pytest.raises(InvalidParameter):
            engine.generate_access_code(alice.user_id, request_body)

    def test_codes_are_unique(self, engine, alice):
        codes = {
            engine.generate_access_code(alice.user_id, {"target_tier_level": 2}).code
            for _ in range(25)
        }
        assert len(codes) == 25

    def test_collision_retried(self, engine, alice, monkeypatch):
        """A colliding code is regenerated instead of failing the request."""
        first = engine.generate_access_code(alice.user_id, {"target_tier_level": 2})
        candidates = iter([first.code, "FRESHC0D"])
        monkeypatch.setattr(engine, "_new_code", lambda: next(candidates))

        second = engine.generate_access_code(alice.user_id, {"target_tier_level": 2})
        assert second.code == "FRESHC0D"

    def test_deactivated_issuer_cannot_mint(self, engine, alice):
        bob = invite(engine, alice, 3, "bob")
        engine.deactivate_user(alice.user_id, bob.user_id)
        with pytest.raises(Forbidden):
            engine.generate_access_code(bob.user_id, {"target_tier_level": 5})


class TestDocuments:
    """Document gating, audit trail and soft delete."""

    def test_visibility_by_tier(self, engine, alice):
        """Scenario D: tier-3 gate hides from tier 5, shows to tier 2."""
        bob = invite(engine, alice, 3, "bob")
        dana = invite(engine, alice, 2, "dana")
        erin = invite(engine, bob, 5, "erin")

        document = upload(engine, bob, 3)

        assert not engine.can_access(erin.user_id, document.document_id)
        assert engine.can_access(dana.user_id, document.document_id)
        assert engine.can_access(bob.user_id, document.document_id)

    def test_inactive_document_invisible(self, engine, alice):
        """P4: no tier can access an inactive document."""
        document = upload(engine, alice, 5)
        engine.delete_document(alice.user_id, document.document_id)
        assert not engine.can_access(alice.user_id, document.document_id)

    def test_can_access_unknown_ids(self, engine, alice):
        assert not engine.can_access(alice.user_id, "missing")
        assert not engine.can_access("missing", "missing")

    def test_upload_cannot_loosen_gate(self, engine, alice):
        """Uploaders may only require same-or-stricter access than themselves."""
        bob = invite(engine, alice, 3, "bob")
        with pytest.raises(InvalidParameter, match="higher than your own tier"):
            upload(engine, bob, 2)

    def test_upload_defaults_gate_to_own_tier(self, engine, alice):
        bob = invite(engine, alice, 3, "bob")
        document = engine.upload_document(bob.user_id, {"file_name": "a.txt", "content": b"abc"})
        assert document.minimum_tier_level == 3

    def test_upload_records_hash_and_size(self, engine, alice):
        document = upload(engine, alice, 2, content=b"hello")
        assert document.file_hash == "LPJNul+wow4m6DsqxbninhsWHlwfp0JecwQzYpOLmCQ="
        assert document.file_size == 5
        assert engine.blobs.exists(document.blob_ref)

    def test_empty_upload_rejected(self, engine, alice):
        with pytest.raises(InvalidParameter):
            upload(engine, alice, 2, content=b"")

    def test_listing_newest_first(self, engine, alice, clock):
        bob = invite(engine, alice, 3, "bob")
        old = upload(engine, alice, 3, name="old.txt")
        clock.advance(minutes=5)
        new = upload(engine, alice, 4, name="new.txt")
        clock.advance(minutes=5)
        upload(engine, alice, 1, name="secret.txt")

        listed = engine.list_accessible_documents(bob.user_id)
        assert [v.document.document_id for v in listed] == [new.document_id, old.document_id]
        assert listed[0].uploaded_by_name == "Alice"

    def test_view_records_audit(self, engine, alice):
        document = upload(engine, alice, 2, category="Finance")
        view = engine.view_document(alice.user_id, document.document_id)

        assert view.document.category == "Finance"
        assert view.uploaded_by_department == "Ops"
        entries = engine.audit.query(document_id=document.document_id)
        assert [e.access_type for e in entries] == [AccessType.VIEW]

    def test_download_streams_content(self, engine, alice):
        document = upload(engine, alice, 2, content=b"payload")
        result = engine.download_document(alice.user_id, document.document_id)
        with result.stream as stream:
            assert stream.read() == b"payload"

        entries = engine.audit.query(user_id=alice.user_id)
        assert [e.access_type for e in entries] == [AccessType.DOWNLOAD]

    def test_forbidden_access_not_audited(self, engine, alice):
        bob = invite(engine, alice, 3, "bob")
        document = upload(engine, alice, 1)

        with pytest.raises(Forbidden):
            engine.view_document(bob.user_id, document.document_id)
        with pytest.raises(Forbidden):
            engine.download_document(bob.user_id, document.document_id)
        assert engine.audit.query() == []

    def test_missing_document(self, engine, alice):
        with pytest.raises(NotFound):
            engine.view_document(alice.user_id, "missing")

    def test_missing_blob(self, engine, alice):
        """Metadata without content surfaces as a missing physical file."""
        document = upload(engine, alice, 2)
        if hasattr(engine.blobs, "discard"):
            engine.blobs.discard(document.blob_ref)
        else:
            (engine.blobs.root / document.blob_ref).unlink()

        with pytest.raises(NotFound, match="Physical file not found"):
            engine.download_document(alice.user_id, document.document_id)
        assert engine.audit.query() == []

    def test_soft_delete(self, engine, alice):
        """P5: deleted documents persist inactive and vanish from listings."""
        bob = invite(engine, alice, 3, "bob")
        document = upload(engine, bob, 3)

        engine.delete_document(bob.user_id, document.document_id)

        stored = engine.documents.get_document(document.document_id)
        assert stored is not None
        assert stored.is_active is False
        for user in (alice, bob):
            assert engine.list_accessible_documents(user.user_id) == []
        with pytest.raises(NotFound):
            engine.view_document(alice.user_id, document.document_id)

    def test_delete_by_sufficient_tier(self, engine, alice):
        """Anyone with the document's required authority may delete it."""
        bob = invite(engine, alice, 3, "bob")
        carol = invite(engine, alice, 3, "carol")
        document = upload(engine, bob, 4)
        engine.delete_document(carol.user_id, document.document_id)
        assert not engine.documents.get_document(document.document_id).is_active

    def test_delete_forbidden(self, engine, alice):
        bob = invite(engine, alice, 3, "bob")
        erin = invite(engine, bob, 5, "erin")
        document = upload(engine, bob, 4)
        with pytest.raises(Forbidden):
            engine.delete_document(erin.user_id, document.document_id)
        assert engine.documents.get_document(document.document_id).is_active

    def test_delete_missing(self, engine, alice):
        with pytest.raises(NotFound):
            engine.delete_document(alice.user_id, "missing")

    def test_integrity_check(self, engine, alice):
        document = upload(engine, alice, 2, content=b"x" * 200_000)
        assert engine.verify_document_integrity(alice.user_id, document.document_id)

    def test_integrity_check_detects_tampering(self, engine, alice):
        """Stored bytes changed after upload no longer match the catalogued hash."""
        document = upload(engine, alice, 2, content=b"original contents")
        if hasattr(engine.blobs, "discard"):
            engine.blobs._blobs[document.blob_ref] = b"altered contents"
        else:
            (engine.blobs.root / document.blob_ref).write_bytes(b"altered contents")

        assert engine.verify_document_integrity(alice.user_id, document.document_id) is False

    def test_identical_uploads_stay_independent(self, engine, alice):
        """Re-uploading the same bytes catalogues a separate document and blob."""
        first = upload(engine, alice, 2, content=b"same")
        second = upload(engine, alice, 2, content=b"same")

        assert first.file_hash == second.file_hash
        assert first.document_id != second.document_id
        assert first.blob_ref != second.blob_ref
        engine.delete_document(alice.user_id, first.document_id)
        assert engine.verify_document_integrity(alice.user_id, second.document_id)


class TestOrganization:
    """Hierarchy queries and deactivation."""

    @pytest.fixture
    def org(self, engine, alice):
        bob = invite(engine, alice, 3, "bob", full_name="Bob")
        dana = invite(engine, alice, 2, "dana", full_name="Dana")
        aaron = invite(engine, alice, 3, "aaron", full_name="Aaron")
        erin = invite(engine, bob, 5, "erin", full_name="Erin")
        frank = invite(engine, dana, 4, "frank", full_name="Frank")
        return {"alice": alice, "bob": bob, "dana": dana, "aaron": aaron, "erin": erin, "frank": frank}

    def test_subordinates_ordered(self, engine, org):
        subordinates = engine.get_subordinates(org["alice"].user_id)
        assert [s.user.username for s in subordinates] == ["dana", "aaron", "bob"]

    def test_subordinates_exclude_inactive(self, engine, org):
        engine.deactivate_user(org["alice"].user_id, org["aaron"].user_id)
        subordinates = engine.get_subordinates(org["alice"].user_id)
        assert [s.user.username for s in subordinates] == ["dana", "bob"]

    def test_subordinate_document_count(self, engine, org):
        upload(engine, org["bob"], 3)
        upload(engine, org["bob"], 4)
        counts = {s.user.username: s.document_count for s in engine.get_subordinates(org["alice"].user_id)}
        assert counts == {"dana": 0, "aaron": 0, "bob": 2}

    def test_global_tree(self, engine, org):
        """Tier 1 sees the whole forest from the root."""
        tree = engine.get_organization_tree(org["alice"].user_id)
        assert len(tree) == 1
        root = tree[0]
        assert root.user.username == "alice"
        assert [c.user.username for c in root.children] == ["dana", "aaron", "bob"]
        bob_node = root.children[2]
        assert [c.user.username for c in bob_node.children] == ["erin"]

    def test_global_tree_below_root(self, engine, org):
        """Tier 2 sees every visible user, rooted where parents fall outside view."""
        tree = engine.get_organization_tree(org["dana"].user_id)
        assert [n.user.username for n in tree] == ["dana", "aaron", "bob"]
        assert [c.user.username for c in tree[0].children] == ["frank"]

    def test_scoped_tree(self, engine, org):
        """Below the global-view tiers the tree is the requester's own subtree."""
        tree = engine.get_organization_tree(org["bob"].user_id)
        assert len(tree) == 1
        assert tree[0].user.username == "bob"
        assert [c.user.username for c in tree[0].children] == ["erin"]

    def test_deactivate_lower_tier(self, engine, org):
        view = engine.deactivate_user(org["bob"].user_id, org["erin"].user_id)
        assert view.is_active is False
        assert not engine.identities.get_user(org["erin"].user_id).is_active

    def test_deactivate_does_not_cascade(self, engine, org):
        engine.deactivate_user(org["alice"].user_id, org["bob"].user_id)
        assert engine.identities.get_user(org["erin"].user_id).is_active

    @pytest.mark.parametrize("actor, target", [("bob", "aaron"), ("bob", "dana"), ("erin", "bob"), ("bob", "bob")])
    def test_deactivate_forbidden(self, engine, org, actor, target):
        with pytest.raises(Forbidden):
            engine.deactivate_user(org[actor].user_id, org[target].user_id)

    def test_deactivate_unknown_target(self, engine, org):
        with pytest.raises(NotFound):
            engine.deactivate_user(org["alice"].user_id, "missing")

    def test_profile(self, engine, org):
        engine.generate_access_code(org["bob"].user_id, {"target_tier_level": 6})
        profile = engine.get_profile(org["bob"].user_id)
        assert profile.parent_name == "Alice"
        assert profile.subordinate_count == 1
        assert [c.target_tier_level for c in profile.active_access_codes] == [6]


class TestAuthentication:
    """Login and bearer-token resolution."""

    def test_login(self, engine, alice, clock):
        result = engine.login("alice", "Passw0rd!")
        assert result.user.user_id == alice.user_id
        assert engine.identities.get_user(alice.user_id).last_login == clock.now

    @pytest.mark.parametrize("username, password", [("alice", "wrong-pass"), ("nobody", "Passw0rd!")])
    def test_login_rejected(self, engine, alice, username, password):
        with pytest.raises(Unauthenticated):
            engine.login(username, password)

    def test_inactive_cannot_login(self, engine, alice):
        bob = invite(engine, alice, 3, "bob")
        engine.deactivate_user(alice.user_id, bob.user_id)
        with pytest.raises(Unauthenticated, match="disabled"):
            engine.login("bob", "Passw0rd!")

    def test_authenticate(self, engine, alice):
        token = engine.login("alice", "Passw0rd!").token
        assert engine.authenticate(token).user_id == alice.user_id

    def test_authenticate_rejects_garbage(self, engine, alice):
        with pytest.raises(Unauthenticated):
            engine.authenticate("not-a-token")

    def test_authenticate_rejects_deactivated(self, engine, alice):
        bob = invite(engine, alice, 3, "bob")
        token = engine.login("bob", "Passw0rd!").token
        engine.deactivate_user(alice.user_id, bob.user_id)
        with pytest.raises(Unauthenticated):
            engine.authenticate(token)


class TestAdministration:
    """Access logs and statistics."""

    def test_access_logs(self, engine, alice, clock):
        bob = invite(engine, alice, 2, "bob")
        first = upload(engine, alice, 2, name="a.txt", category="HR")
        second = upload(engine, alice, 2, name="b.txt")

        engine.view_document(bob.user_id, first.document_id)
        clock.advance(seconds=1)
        engine.download_document(bob.user_id, second.document_id).stream.close()
        clock.advance(seconds=1)
        engine.view_document(alice.user_id, second.document_id)

        logs = engine.get_access_logs(alice.user_id)
        assert [(e.username, e.file_name) for e in logs] == [
            ("alice", "b.txt"), ("bob", "b.txt"), ("bob", "a.txt"),
        ]
        assert logs[2].category == "HR"

        by_bob = engine.get_access_logs(alice.user_id, user_id=bob.user_id, page=2, page_size=1)
        assert [e.file_name for e in by_bob] == ["a.txt"]

    def test_access_logs_filter_by_instant(self, engine, alice):
        """Date filters with any UTC offset compare the moment, not the wall clock."""
        document = upload(engine, alice, 2)
        engine.view_document(alice.user_id, document.document_id)
        plus_five = timezone(timedelta(hours=5))

        # 13:00+05:00 is 08:00 UTC, before the 09:00 UTC view.
        since = datetime(2026, 10, 18, 13, 0, tzinfo=plus_five)
        assert len(engine.get_access_logs(alice.user_id, from_date=since)) == 1

        after = datetime(2026, 10, 18, 15, 0, tzinfo=plus_five)
        assert engine.get_access_logs(alice.user_id, from_date=after) == []
        assert len(engine.get_access_logs(alice.user_id, to_date=after)) == 1

    def test_access_logs_naive_dates_read_as_utc(self, engine, alice):
        document = upload(engine, alice, 2)
        engine.view_document(alice.user_id, document.document_id)

        assert len(engine.get_access_logs(alice.user_id, from_date=datetime(2026, 1, 1))) == 1
        assert engine.get_access_logs(alice.user_id, to_date=datetime(2026, 10, 18, 8, 0)) == []
        assert len(engine.get_access_logs(alice.user_id, to_date=datetime(2026, 10, 18, 9, 0))) == 1

    def test_access_logs_require_admin_tier(self, engine, alice):
        bob = invite(engine, alice, 3, "bob")
        with pytest.raises(Forbidden):
            engine.get_access_logs(bob.user_id)

    def test_access_logs_page_bounds(self, engine, alice):
        with pytest.raises(InvalidParameter):
            engine.get_access_logs(alice.user_id, page=0)

    def test_statistics(self, engine, alice, clock):
        bob = invite(engine, alice, 3, "bob")
        engine.generate_access_code(alice.user_id, {"target_tier_level": 4})
        upload(engine, alice, 2, category="HR")
        upload(engine, bob, 3, category="HR")
        doc = upload(engine, bob, 3, category="Ops")
        engine.view_document(alice.user_id, doc.document_id)

        stats = engine.get_statistics(alice.user_id)
        assert stats.total_users == 2
        assert stats.users_by_tier == {1: 1, 3: 1}
        assert stats.total_documents == 3
        assert stats.documents_by_category == {"HR": 2, "Ops": 1}
        assert stats.total_access_codes == 2
        assert stats.active_access_codes == 1
        assert stats.recent_uploads == 3
        assert stats.recent_accesses == 1

        with pytest.raises(Forbidden):
            engine.get_statistics(bob.user_id)
