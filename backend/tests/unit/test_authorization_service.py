"""
Unit tests for the authorization resolver.

Each decision combines the subject's static permissions with ownership and
vault-share state read from the store.
"""

import pytest
from sqlalchemy.exc import OperationalError

from passman.exceptions import ForbiddenError, TransientError
from passman.models.authorization_models import AuthorizationDecision, ResourceIdentifier, Subject
from passman.rbac import ActionType


@pytest.fixture
def credential(core, alice, alice_vault):
    return core.credentials.create_credential(alice_vault.id, alice, "Mail", "s3cret").unwrap()


@pytest.mark.unit
class TestStaticPermission:
    """The role check happens first and needs no store access."""

    def test_missing_permission_denies_before_lookup(self, core, alice_vault) -> None:
        """A subject without vault.read is denied even on an unknown id."""
        reader_without_roles = Subject(user_id=alice_vault.owner_id, roles=[])
        result = core.authorizer.authorize(reader_without_roles, ActionType.VAULT_READ, ResourceIdentifier.vault(999))

        assert result.decision == AuthorizationDecision.DENY
        assert "missing permission vault.read" in result.reason

    def test_no_resource_means_role_check_only(self, core, alice) -> None:
        """Without an instance only the role is consulted."""
        result = core.authorizer.authorize(alice, ActionType.VAULT_CREATE)
        assert result.allowed
        assert result.granted_by == "permission"

    def test_reader_cannot_create(self, core) -> None:
        reader = core.register("reader@test.local", roles=["VaultReader"])
        assert not core.authorizer.is_allowed(reader, ActionType.VAULT_CREATE)


@pytest.mark.unit
class TestOwnershipAndShares:
    """Resource instances need ownership, a share or an override."""

    def test_owner_allowed(self, core, alice, alice_vault) -> None:
        result = core.authorizer.authorize(alice, ActionType.VAULT_UPDATE, ResourceIdentifier.vault(alice_vault.id))
        assert result.allowed
        assert result.granted_by == "owner"

    def test_stranger_denied(self, core, bob, alice_vault) -> None:
        """Holding the role permission is not enough for someone else's vault."""
        result = core.authorizer.authorize(bob, ActionType.VAULT_READ, ResourceIdentifier.vault(alice_vault.id))
        assert not result.allowed

    @pytest.mark.parametrize(
        "tier,action,allowed",
        [
            ("View", ActionType.VAULT_READ, True),
            ("View", ActionType.CREDENTIAL_READ, True),
            ("View", ActionType.CREDENTIAL_CREATE, False),
            ("Edit", ActionType.CREDENTIAL_CREATE, True),
            ("Edit", ActionType.CREDENTIAL_DELETE, True),
            ("Edit", ActionType.VAULT_SHARE, False),
            ("Admin", ActionType.VAULT_SHARE, True),
            ("Admin", ActionType.VAULT_UPDATE, False),
            ("Admin", ActionType.VAULT_DELETE, False),
        ],
    )
    def test_share_tiers(self, core, alice, bob, alice_vault, tier, action, allowed) -> None:
        """Each tier admits exactly the actions at or below it."""
        core.sharing.share(alice_vault.id, alice, "bob@test.local", tier).unwrap()
        result = core.authorizer.authorize(bob, action, ResourceIdentifier.vault(alice_vault.id))

        assert result.allowed is allowed
        if allowed:
            assert result.granted_by == "share"

    def test_credential_inherits_vault(self, core, alice, bob, credential) -> None:
        """Credential access follows the parent vault's shares."""
        resource = ResourceIdentifier.credential(credential.id)
        assert not core.authorizer.is_allowed(bob, ActionType.CREDENTIAL_READ, resource)

        core.sharing.share(credential.vault_id, alice, "bob@test.local", "View").unwrap()
        assert core.authorizer.is_allowed(bob, ActionType.CREDENTIAL_READ, resource)
        assert not core.authorizer.is_allowed(bob, ActionType.CREDENTIAL_UPDATE, resource)

    def test_share_does_not_exceed_role(self, core, alice, alice_vault) -> None:
        """An Edit share cannot give a VaultReader credential.create."""
        reader = core.register("reader@test.local", roles=["VaultReader"])
        core.sharing.share(alice_vault.id, alice, "reader@test.local", "Edit").unwrap()

        assert not core.authorizer.is_allowed(
            reader, ActionType.CREDENTIAL_CREATE, ResourceIdentifier.vault(alice_vault.id)
        )
        assert core.authorizer.is_allowed(reader, ActionType.CREDENTIAL_READ, ResourceIdentifier.vault(alice_vault.id))

    def test_admin_role_does_not_bypass_ownership(self, core, admin, alice_vault) -> None:
        """Admin holds every permission but is still not the owner."""
        assert not core.authorizer.is_allowed(admin, ActionType.VAULT_READ, ResourceIdentifier.vault(alice_vault.id))

    def test_tags_are_owner_only(self, core, alice, bob) -> None:
        tag = core.tags.create_tag(alice, "work").unwrap()
        resource = ResourceIdentifier.tag(tag.id)

        assert core.authorizer.is_allowed(alice, ActionType.TAG_READ, resource)
        assert not core.authorizer.is_allowed(bob, ActionType.TAG_READ, resource)

    def test_unknown_resource_denied(self, core, alice) -> None:
        result = core.authorizer.authorize(alice, ActionType.VAULT_READ, ResourceIdentifier.vault(12345))
        assert not result.allowed
        assert result.reason == "resource not found"


@pytest.mark.unit
class TestSoftDelete:
    """Deleted vaults deny everything but explicit history reads."""

    def test_deleted_vault_denied_to_owner(self, core, alice, alice_vault) -> None:
        core.vaults.delete_vault(alice_vault.id, alice).unwrap()

        result = core.authorizer.authorize(alice, ActionType.VAULT_READ, ResourceIdentifier.vault(alice_vault.id))
        assert not result.allowed
        assert result.reason == "resource deleted"

    def test_deleted_vault_history_readable(self, core, alice, alice_vault) -> None:
        """Audit reads that ask for deleted history still resolve ownership."""
        core.vaults.delete_vault(alice_vault.id, alice).unwrap()
        resource = ResourceIdentifier.vault(alice_vault.id)

        assert core.authorizer.is_allowed(alice, ActionType.AUDIT_VAULT_READ, resource, include_deleted=True)
        assert not core.authorizer.is_allowed(alice, ActionType.AUDIT_VAULT_READ, resource)
        assert not core.authorizer.is_allowed(alice, ActionType.VAULT_READ, resource, include_deleted=True)


@pytest.mark.unit
class TestAuditResources:
    """Audit entries belong to their author and the owner of their vault."""

    def test_entry_author_and_vault_owner(self, core, alice, bob, auditor, alice_vault) -> None:
        core.sharing.share(alice_vault.id, alice, "bob@test.local", "View").unwrap()
        entry = core.audit.log(bob.user_id, 303, vault_id=alice_vault.id).unwrap()
        resource = ResourceIdentifier.audit_entry(entry.id)

        assert core.authorizer.is_allowed(bob, ActionType.AUDIT_ENTRY_READ, resource)
        assert core.authorizer.is_allowed(alice, ActionType.AUDIT_ENTRY_READ, resource)
        assert core.authorizer.authorize(auditor, ActionType.AUDIT_ENTRY_READ, resource).granted_by == (
            "override audit.read"
        )

    def test_stranger_cannot_read_entry(self, core, bob, carol) -> None:
        entry = core.audit.log(bob.user_id, 101).unwrap()
        assert not core.authorizer.is_allowed(carol, ActionType.AUDIT_ENTRY_READ, ResourceIdentifier.audit_entry(entry.id))


@pytest.mark.unit
class TestFailureModes:
    def test_require_raises_forbidden(self, core, bob, alice_vault) -> None:
        """The denial message never says why."""
        with pytest.raises(ForbiddenError) as exc_info:
            core.authorizer.require(bob, ActionType.VAULT_READ, ResourceIdentifier.vault(alice_vault.id))
        assert exc_info.value.message == "Access denied"

    def test_store_timeout_is_transient(self, core, alice, alice_vault, monkeypatch) -> None:
        """A locked or unreachable store becomes TransientError, never Allow."""

        def locked(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(core.authorizer.share_store, "get_vault", locked)
        with pytest.raises(TransientError):
            core.authorizer.authorize(alice, ActionType.VAULT_READ, ResourceIdentifier.vault(alice_vault.id))
