import pytest

from db_user_federation import error_codes
from db_user_federation.engine import SyncResult
from db_user_federation.errors import ConfigurationError, DataSourceConnectionError, UnlinkError
from db_user_federation.provider import DatabaseUserProvider, external_id, split_storage_id
from db_user_federation.records import ExternalUserRecord

from conftest import INSTANCE_ID, USERS


@pytest.fixture
def make_provider(registry, settings, store):
    def _make(**overrides):
        registry.validate_configuration(INSTANCE_ID, {**settings, **overrides})
        return registry.create(INSTANCE_ID, store)
    return _make


@pytest.fixture
def provider(make_provider):
    return make_provider()


class TestStorageIds:
    def test_round_trip(self):
        assert external_id("main", "42") == "f:main:42"
        assert split_storage_id("f:main:42") == ("main", "42")

    def test_external_id_may_contain_colons(self):
        assert split_storage_id("f:main:ou:people:7") == ("main", "ou:people:7")

    def test_plain_ids_pass_through(self):
        assert split_storage_id("local-1") == (None, "local-1")


class TestLookups:
    def test_external_user(self, provider):
        rec = provider.get_user_by_username("alice")
        assert isinstance(rec, ExternalUserRecord)
        assert rec.id == "1"

    def test_unfederated_local_user_shadows_external(self, provider, store):
        local = store.add_user("alice")
        assert provider.get_user_by_username("alice") is local

    def test_federated_local_user_defers_to_external(self, provider, store):
        store.add_user("alice").federation_link = INSTANCE_ID
        assert isinstance(provider.get_user_by_username("alice"), ExternalUserRecord)

    def test_by_email(self, provider, store):
        assert provider.get_user_by_email("bob@example.com").username == "bob"
        local = store.add_user("bobby")
        local.email = "bob@example.com"
        assert provider.get_user_by_email("bob@example.com") is local

    def test_by_storage_id(self, provider):
        assert provider.get_user_by_id(external_id(INSTANCE_ID, "3")).username == "carol"
        assert provider.get_user_by_id(external_id("other", "3")) is None

    def test_by_plain_id(self, provider, store):
        local = store.add_user("zoe")
        assert provider.get_user_by_id(local.id) is local
        assert provider.get_user_by_id("4").username == "dave"

    def test_search_and_count(self, provider):
        assert [r.username for r in provider.search_users(first=0, max_results=2)] == ["alice", "bob"]
        assert len(provider.search_users()) == len(USERS)
        assert [r.username for r in provider.search_users("car")] == ["carol"]
        assert provider.count_users() == len(USERS)
        assert provider.count_users("example.com") == 6


class TestCredentials:
    def test_is_valid(self, provider, store):
        assert provider.is_valid("alice", "pw-alice")
        assert not provider.is_valid("alice", "nope")
        assert not provider.is_valid("", "pw-alice")
        assert not provider.is_valid("alice", None)
        assert store.users == {}

    def test_login_imports_when_enabled(self, make_provider, store):
        provider = make_provider(syncNewUsersOnLogin="true")
        assert not provider.is_valid("bob", "wrong")
        assert store.users == {}
        assert provider.is_valid("bob", "pw-bob")
        bob = store.get_user_by_username("bob")
        assert bob.federation_link == INSTANCE_ID
        assert bob.email == "bob@example.com"

    def test_login_refreshes_linked_user_when_overwrite_allowed(self, make_provider, store):
        provider = make_provider(allowDatabaseToOverwriteKeycloak="true")
        bob = store.add_user("bob")
        bob.federation_link = INSTANCE_ID
        assert provider.is_valid("bob", "pw-bob")
        assert bob.first_name == "Bob"

    def test_import_failure_does_not_change_the_result(self, make_provider, store):
        provider = make_provider(syncNewUsersOnLogin="true")

        def broken_add(username):
            raise RuntimeError("store offline")

        store.add_user = broken_add
        assert provider.is_valid("bob", "pw-bob")

    def test_update_credential(self, provider, store):
        unlinked = store.add_user("carol")
        assert not provider.update_credential(unlinked, "whatever")

        linked = store.add_user("dave")
        linked.federation_link = INSTANCE_ID
        assert provider.update_credential(linked, "fresh")
        assert provider.is_valid("dave", "fresh")
        assert not provider.is_valid("dave", "pw-dave")

    def test_remove_user_follows_policy(self, make_provider, store):
        user = store.add_user("erin")
        assert not make_provider().remove_user(user)
        assert make_provider(allowKeycloakDelete="true").remove_user(user)


class TestUnlink:
    def test_disabled(self, provider, store):
        user = store.add_user("frank")
        with pytest.raises(UnlinkError) as ei:
            provider.unlink_user(user.id)
        assert ei.value.subcode == error_codes.UNLINK_DISABLED

    def test_not_found(self, make_provider):
        with pytest.raises(UnlinkError) as ei:
            make_provider(unlinkEnabled="true").unlink_user("local-404")
        assert ei.value.subcode == error_codes.UNLINK_USER_NOT_FOUND

    def test_not_federated(self, make_provider, store):
        user = store.add_user("frank")
        with pytest.raises(UnlinkError) as ei:
            make_provider(unlinkEnabled="true").unlink_user(user.id)
        assert ei.value.subcode == error_codes.UNLINK_USER_NOT_FEDERATED

    def test_clears_the_link(self, make_provider, store):
        user = store.add_user("frank")
        user.federation_link = INSTANCE_ID
        assert make_provider(unlinkEnabled="true").unlink_user(user.id) is user
        assert user.federation_link is None


class TestSync:
    def test_disabled_sync_is_empty(self, provider, store):
        assert provider.sync() == SyncResult()
        assert store.users == {}

    def test_enabled_sync_imports(self, make_provider, store):
        result = make_provider(syncEnabled="true").sync()
        assert result.added == len(USERS)
        assert len(store.users) == len(USERS)

    def test_sync_without_creation(self, make_provider, store):
        result = make_provider(syncEnabled="true", syncCreatesUsers="false").sync()
        assert result.total == 0
        assert store.users == {}


class TestRegistry:
    def test_get_or_configure_caches(self, registry, settings):
        first = registry.get_or_configure(INSTANCE_ID, settings)
        assert registry.get_or_configure(INSTANCE_ID, settings) is first

    def test_reconfiguration_swaps_and_closes_previous(self, registry, settings):
        old = registry.get_or_configure(INSTANCE_ID, settings)
        new = registry.validate_configuration(INSTANCE_ID, {**settings, "syncEnabled": "true"})
        assert registry.get(INSTANCE_ID) is new
        assert new.query_config.sync_enabled
        with pytest.raises(DataSourceConnectionError):
            with old.datasource.acquire():
                pass

    def test_failed_reconfiguration_keeps_current(self, registry, settings, store):
        current = registry.get_or_configure(INSTANCE_ID, settings)
        with pytest.raises(ConfigurationError):
            registry.validate_configuration(INSTANCE_ID, {**settings, "findById": "select 1"})
        assert registry.get(INSTANCE_ID) is current
        assert registry.create(INSTANCE_ID, store).count_users() == len(USERS)

    def test_provider_built_before_reconfiguration_fails_fast(self, registry, settings, store):
        registry.get_or_configure(INSTANCE_ID, settings)
        stale = registry.create(INSTANCE_ID, store)
        registry.validate_configuration(INSTANCE_ID, settings)
        with pytest.raises(DataSourceConnectionError):
            stale.count_users()
        assert registry.create(INSTANCE_ID, store).count_users() == len(USERS)

    def test_create_requires_configuration(self, registry, store):
        with pytest.raises(ConfigurationError) as ei:
            registry.create("unknown", store)
        assert ei.value.subcode == error_codes.CONFIG_NOT_CONFIGURED

    def test_create_with_settings_configures_lazily(self, registry, settings, store):
        provider = registry.create("lazy", store, settings)
        assert isinstance(provider, DatabaseUserProvider)
        assert provider.instance_id == "lazy"
        assert registry.get("lazy") is provider.config

    def test_close_closes_every_datasource(self, registry, settings):
        a = registry.get_or_configure("a", settings)
        b = registry.get_or_configure("b", settings)
        registry.close()
        assert registry.get("a") is None
        assert not a.datasource.is_configured and not b.datasource.is_configured
