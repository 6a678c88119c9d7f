import logging

import pytest

from db_user_federation import error_codes
from db_user_federation.errors import DataSourceConnectionError, QueryExecutionError, RowMappingError
from db_user_federation.paging import PageRequest
from db_user_federation.records import ExternalUserRecord

from conftest import COLUMNS, USERS, sha1_hex

ALL_IDS = [u[0] for u in USERS]


class TestLookups:
    def test_count(self, repository):
        assert repository.count() == len(USERS)

    def test_count_with_search_matches_search_results(self, repository):
        assert repository.count("ALI") == 1
        assert repository.count("example.com") == 6
        assert repository.count("example.com") == len(repository.find_users("example.com"))

    @pytest.mark.parametrize("term", [None, "", "  ", "*"])
    def test_match_all_terms(self, repository, term):
        assert repository.count(term) == len(USERS)
        assert [r.id for r in repository.find_users(term)] == ALL_IDS

    def test_find_by_username(self, repository):
        rec = repository.find_by_username("alice")
        assert isinstance(rec, ExternalUserRecord)
        assert (rec.id, rec.username, rec.email) == ("1", "alice", "alice@example.com")
        assert (rec.first_name, rec.last_name) == ("Alice", "Anders")
        assert rec.extra_attributes() == {"fullName": "Alice Anders"}
        assert "hash_pwd" not in rec

    def test_find_by_id_and_email(self, repository):
        assert repository.find_by_id("3").username == "carol"
        assert repository.find_by_email("erin@example.com").id == "5"

    def test_missing_users(self, repository):
        assert repository.find_by_id("404") is None
        assert repository.find_by_username("mallory") is None
        assert repository.find_by_email("nobody@example.com") is None

    def test_null_and_blank_columns_are_dropped(self, repository):
        frank = repository.find_by_username("frank")
        assert frank.email is None
        assert "email" not in frank and "lastName" not in frank
        grace = repository.find_by_username("grace")
        assert grace.last_name is None

    def test_multiple_rows_take_the_first(self, make_repository, caplog):
        repo = make_repository(findByEmail=f'select {COLUMNS} from users where "email" = ? or 1 = 1 order by "id" desc')
        with caplog.at_level(logging.WARNING):
            rec = repo.find_by_email("alice@example.com")
        assert rec.id == "7"
        assert "using the first one" in caplog.text


class TestPaging:
    @pytest.mark.parametrize("k", [1, 3, len(USERS)])
    def test_pages_concatenate_to_the_full_list(self, repository, k):
        pages = []
        for offset in range(0, len(USERS), k):
            page = repository.find_users(page=PageRequest(offset=offset, limit=k))
            assert len(page) <= k
            pages.extend(page)
        assert [r.id for r in pages] == [r.id for r in repository.find_users()]

    def test_page_past_the_end_is_empty(self, repository):
        assert repository.find_users(page=PageRequest(offset=100, limit=5)) == []

    def test_unbounded_page_skips_offset(self, repository):
        assert [r.id for r in repository.find_users(page=PageRequest(offset=5))] == ALL_IDS[5:]

    def test_search_with_paging(self, repository):
        page = repository.find_users("example.com", PageRequest(offset=1, limit=2))
        assert [r.username for r in page] == ["bob", "carol"]


class TestFailures:
    def test_row_without_id_aborts_the_call(self, make_repository):
        repo = make_repository(listAll='select "username", "email" from users')
        with pytest.raises(RowMappingError) as ei:
            repo.find_users()
        assert ei.value.subcode == error_codes.ROW_MISSING_ID
        assert ei.value.details["row_index"] == 0

    def test_row_without_username_aborts_the_call(self, make_repository):
        repo = make_repository(findById='select "id" from users where "id" = ?')
        with pytest.raises(RowMappingError) as ei:
            repo.find_by_id("1")
        assert ei.value.subcode == error_codes.ROW_MISSING_USERNAME

    def test_broken_statement(self, make_repository):
        repo = make_repository(listAll="select id, username from no_such_table")
        with pytest.raises(QueryExecutionError):
            repo.find_users()

    def test_closed_datasource(self, repository, datasource):
        datasource.close()
        with pytest.raises(DataSourceConnectionError):
            repository.count()


class TestCredentials:
    def test_validate(self, repository):
        assert repository.validate_credentials("alice", "pw-alice")
        assert not repository.validate_credentials("alice", "pw-bob")
        assert not repository.validate_credentials("mallory", "pw-alice")

    def test_find_password_hash(self, repository):
        assert repository.find_password_hash("bob") == sha1_hex("pw-bob")
        assert repository.find_password_hash("mallory") is None

    def test_update_round_trip(self, repository):
        assert repository.update_credentials("bob", "new-secret")
        assert repository.validate_credentials("bob", "new-secret")
        assert not repository.validate_credentials("bob", "pw-bob")

    def test_update_unknown_user(self, repository):
        assert not repository.update_credentials("mallory", "whatever")

    def test_update_without_template(self, make_repository):
        repo = make_repository(updatePasswordHash=None)
        assert not repo.update_credentials("bob", "new-secret")
        assert repo.validate_credentials("bob", "pw-bob")


class TestSyncFeed:
    def test_defaults_to_list_all(self, repository):
        assert [r.id for r in repository.get_all_users_for_sync()] == ALL_IDS

    def test_dedicated_template(self, make_repository):
        repo = make_repository(listAllForSync=f'select {COLUMNS} from users where "id" in (\'2\', \'4\')')
        assert sorted(r.username for r in repo.get_all_users_for_sync()) == ["bob", "dave"]
