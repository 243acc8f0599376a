"""
Tests for the organization registry
"""

import threading

import pytest

from aml_returns.audit import AuditTrail, AuditEventType
from aml_returns.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from aml_returns.organizations import Organization, OrganizationManager, OrganizationType
from aml_returns.principals import Principal, UserRole
from aml_returns.storage import InMemoryStorage


ADMIN = Principal(user_id="admin-1", email="admin@fia.go.ug", role=UserRole.ADMIN)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def manager(storage, audit_trail):
    return OrganizationManager(storage, audit_trail)


@pytest.fixture
def bank_of_uganda(manager):
    return manager.create_organization(
        ADMIN, code="BOU", name="Bank of Uganda", org_type="regulator",
        contact_email="aml@bou.or.ug", sector="Banking"
    )


def member_of(organization: Organization) -> Principal:
    return Principal(
        user_id="user-1", email="officer@example.org",
        role=UserRole.ORG_USER, organization_id=organization.id
    )


class TestCreateOrganization:
    """Test organization registration"""

    def test_create(self, bank_of_uganda, manager, audit_trail):
        assert bank_of_uganda.code == "BOU"
        assert bank_of_uganda.org_type == OrganizationType.REGULATOR
        assert bank_of_uganda.is_active
        assert bank_of_uganda.created_by == ADMIN.user_id

        assert manager.find(bank_of_uganda.id) == bank_of_uganda
        events = audit_trail.get_events_for_entity("organization", bank_of_uganda.id)
        assert events[0].event_type == AuditEventType.ORGANIZATION_CREATED

    def test_duplicate_code_conflicts(self, bank_of_uganda, manager):
        with pytest.raises(ConflictError):
            manager.create_organization(ADMIN, code="bou", name="Another", org_type="other")

    def test_requires_admin(self, manager, bank_of_uganda):
        with pytest.raises(ForbiddenError):
            manager.create_organization(member_of(bank_of_uganda), code="X", name="X", org_type="other")

    def test_validation(self, manager):
        with pytest.raises(ValidationError):
            manager.create_organization(ADMIN, code="  ", name="Nameless", org_type="other")
        with pytest.raises(ValidationError):
            manager.create_organization(ADMIN, code="UPF", name="Police", org_type="spaceship")
        with pytest.raises(ValidationError):
            manager.create_organization(ADMIN, code="UPF", name="Police", org_type="law_enforcement",
                                        contact_email="not-an-email")

    def test_type_is_case_insensitive(self, manager):
        organization = manager.create_organization(ADMIN, code="UPF", name="Uganda Police", org_type="LAW_ENFORCEMENT")
        assert organization.org_type == OrganizationType.LAW_ENFORCEMENT


class TestQueries:
    """Test lookups and listing"""

    def test_get_by_member_and_admin(self, manager, bank_of_uganda):
        assert manager.get_organization(ADMIN, bank_of_uganda.id) == bank_of_uganda
        assert manager.get_organization(member_of(bank_of_uganda), bank_of_uganda.id) == bank_of_uganda

    def test_other_members_forbidden(self, manager, bank_of_uganda):
        other = manager.create_organization(ADMIN, code="CMA", name="Capital Markets Authority", org_type="regulator")
        with pytest.raises(ForbiddenError):
            manager.get_organization(member_of(other), bank_of_uganda.id)

    def test_not_found(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_organization(ADMIN, "missing")

    def test_get_by_code(self, manager, bank_of_uganda):
        assert manager.get_organization_by_code(ADMIN, "bou").id == bank_of_uganda.id
        with pytest.raises(NotFoundError):
            manager.get_organization_by_code(ADMIN, "NOPE")

    def test_list_filters(self, manager, bank_of_uganda):
        manager.create_organization(ADMIN, code="UPF", name="Uganda Police Force", org_type="law_enforcement")
        dpp = manager.create_organization(ADMIN, code="DPP", name="Directorate of Public Prosecutions",
                                          org_type="prosecution")
        manager.set_active(ADMIN, dpp.id, False)

        assert [o.code for o in manager.list_organizations(ADMIN)] == ["BOU", "DPP", "UPF"]
        assert [o.code for o in manager.list_organizations(ADMIN, org_type="law_enforcement")] == ["UPF"]
        assert [o.code for o in manager.list_organizations(ADMIN, is_active=False)] == ["DPP"]
        assert [o.code for o in manager.list_organizations(ADMIN, search="uganda")] == ["BOU", "UPF"]
        assert [o.code for o in manager.list_organizations(ADMIN, search="dpp")] == ["DPP"]

    def test_list_requires_admin(self, manager, bank_of_uganda):
        with pytest.raises(ForbiddenError):
            manager.list_organizations(member_of(bank_of_uganda))


class TestUpdates:
    """Test updates, activation and deletion"""

    def test_update(self, manager, bank_of_uganda):
        updated = manager.update_organization(ADMIN, bank_of_uganda.id, name="Bank of Uganda (FIA liaison)",
                                              org_type="commercial_bank")
        assert updated.name == "Bank of Uganda (FIA liaison)"
        assert updated.org_type == OrganizationType.COMMERCIAL_BANK
        assert updated.code == "BOU"
        assert bank_of_uganda.name == "Bank of Uganda"
        assert manager.find(bank_of_uganda.id).name == updated.name

    def test_code_cannot_be_updated(self, manager, bank_of_uganda):
        with pytest.raises(ValidationError):
            manager.update_organization(ADMIN, bank_of_uganda.id, code="NEW")

    def test_deactivate_and_reactivate(self, manager, bank_of_uganda, audit_trail):
        assert not manager.set_active(ADMIN, bank_of_uganda.id, False).is_active
        assert manager.set_active(ADMIN, bank_of_uganda.id, True).is_active

        types = [e.event_type for e in audit_trail.get_events_for_entity("organization", bank_of_uganda.id)]
        assert AuditEventType.ORGANIZATION_DEACTIVATED in types
        assert AuditEventType.ORGANIZATION_ACTIVATED in types

    def test_delete_unreferenced(self, manager, bank_of_uganda):
        manager.delete_organization(ADMIN, bank_of_uganda.id)
        assert manager.find(bank_of_uganda.id) is None

        # The code is free again
        manager.create_organization(ADMIN, code="BOU", name="Bank of Uganda", org_type="regulator")

    def test_delete_blocked_by_submissions(self, manager, bank_of_uganda, storage):
        storage.save("submissions", "sub-1", {"id": "sub-1", "organization_id": bank_of_uganda.id})
        with pytest.raises(InvalidStateError):
            manager.delete_organization(ADMIN, bank_of_uganda.id)
        assert manager.find(bank_of_uganda.id) is not None

    def test_delete_blocked_by_users(self, manager, bank_of_uganda, storage):
        storage.save("users", "user-1", {"id": "user-1", "organization_id": bank_of_uganda.id})
        with pytest.raises(InvalidStateError):
            manager.delete_organization(ADMIN, bank_of_uganda.id)


class TestConcurrentUpdates:
    """Test that registry changes load and save in one unit of work"""

    @staticmethod
    def pause_after_load(monkeypatch, manager):
        # Each caller waits for the other after loading; a caller that cannot
        # load yet breaks the barrier and the first one carries on
        barrier = threading.Barrier(2)
        load = manager.require

        def require(organization_id):
            organization = load(organization_id)
            try:
                barrier.wait(timeout=0.5)
            except threading.BrokenBarrierError:
                pass
            return organization

        monkeypatch.setattr(manager, "require", require)

    def test_status_change_and_rename_both_kept(self, monkeypatch, manager, bank_of_uganda):
        self.pause_after_load(monkeypatch, manager)
        threads = [
            threading.Thread(target=manager.set_active, args=(ADMIN, bank_of_uganda.id, False)),
            threading.Thread(target=manager.update_organization, args=(ADMIN, bank_of_uganda.id),
                             kwargs={"name": "Renamed"}),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = manager.find(bank_of_uganda.id)
        assert final.name == "Renamed"
        assert not final.is_active

    def test_update_after_delete_does_not_resurrect(self, monkeypatch, manager, bank_of_uganda):
        self.pause_after_load(monkeypatch, manager)
        errors = []

        def rename():
            try:
                manager.update_organization(ADMIN, bank_of_uganda.id, name="Renamed")
            except NotFoundError as e:
                errors.append(e)

        threads = [
            threading.Thread(target=manager.delete_organization, args=(ADMIN, bank_of_uganda.id)),
            threading.Thread(target=rename),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Either the rename ran first and was deleted, or it found nothing to rename
        assert manager.find(bank_of_uganda.id) is None

    def test_update_deleted_organization(self, manager, bank_of_uganda):
        manager.delete_organization(ADMIN, bank_of_uganda.id)
        with pytest.raises(NotFoundError):
            manager.update_organization(ADMIN, bank_of_uganda.id, name="Renamed")
        with pytest.raises(NotFoundError):
            manager.set_active(ADMIN, bank_of_uganda.id, True)
        assert manager.find(bank_of_uganda.id) is None
