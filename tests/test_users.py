import pytest

from errors import EmailAlreadyTakenError, InvalidCredentialsError, NotFoundError
from security import verify_password
from services import UserService, split_query_attribute


@pytest.fixture
def service(user_repo):
    return UserService(user_repo)


async def add(service, email, name="Teller"):
    return await service.create_user(name, email, "Secret#123", "Secret#123")


class TestQueryAttributes:
    """Test parsing of field:value query parameters."""

    def test_split_trims_both_halves(self):
        """Test whitespace around field and value is dropped."""
        assert split_query_attribute(" name : Budi ") == ("name", "Budi")

    def test_value_may_contain_colons(self):
        """Test only the first colon separates field from value."""
        assert split_query_attribute("name:a:b") == ("name", "a:b")

    def test_unknown_field_rejected(self):
        """Test fields outside the listed ones are refused."""
        with pytest.raises(ValueError):
            split_query_attribute("password_hash:x")

    def test_missing_separator_rejected(self):
        """Test a bare field name is refused."""
        with pytest.raises(ValueError):
            split_query_attribute("email")


class TestListUsers:
    """Test paginated operator listing."""

    @pytest.mark.asyncio
    async def test_defaults_to_email_order_on_one_page(self, service):
        """Test everything on one page, ordered by email."""
        for email in ("c@bank.com", "a@bank.com", "b@bank.com"):
            await add(service, email)

        page = await service.list_users()

        assert [user.email for user in page.users] == ["a@bank.com", "b@bank.com", "c@bank.com"]
        assert page.count == 3
        assert page.total_pages == 1
        assert page.has_previous_page is False
        assert page.has_next_page is False

    @pytest.mark.asyncio
    async def test_last_partial_page(self, service):
        """Test the last page holds the remainder."""
        for email in ("a@bank.com", "b@bank.com", "c@bank.com"):
            await add(service, email)

        page = await service.list_users(page_number=2, page_size=2)

        assert [user.email for user in page.users] == ["c@bank.com"]
        assert page.total_pages == 2
        assert page.has_previous_page is True
        assert page.has_next_page is False

    @pytest.mark.asyncio
    async def test_empty_listing_has_one_page(self, service):
        """Test no operators still reports a single page."""
        page = await service.list_users(page_size=10)

        assert page.users == []
        assert page.count == 0
        assert page.total_pages == 1

    @pytest.mark.asyncio
    async def test_search_counts_matches_only(self, service):
        """Test count and pages follow the search, not the whole collection."""
        await add(service, "a@bank.com", name="Budi")
        await add(service, "b@bank.com", name="Sari")
        await add(service, "c@bank.com", name="Budi")

        page = await service.list_users(page_size=1, search="name:Budi", sort="email:desc")

        assert [user.email for user in page.users] == ["c@bank.com"]
        assert page.count == 2
        assert page.total_pages == 2
        assert page.has_next_page is True

    @pytest.mark.asyncio
    async def test_empty_search_value_matches_all(self, service):
        """Test a search without a value does not filter."""
        await add(service, "a@bank.com")
        await add(service, "b@bank.com")

        page = await service.list_users(search="name:")

        assert page.count == 2

    @pytest.mark.asyncio
    async def test_sort_by_name_ignores_case(self, service):
        """Test name ordering is case-insensitive."""
        await add(service, "a@bank.com", name="budi")
        await add(service, "b@bank.com", name="Agus")

        page = await service.list_users(sort="name:asc")

        assert [user.name for user in page.users] == ["Agus", "budi"]


class TestUpdateUser:
    """Test operator updates and password changes."""

    @pytest.mark.asyncio
    async def test_update_user(self, service):
        """Test name and email are replaced."""
        user = await add(service, "a@bank.com")

        updated = await service.update_user(user.id, "Budi", "budi@bank.com")

        assert updated.name == "Budi"
        assert updated.email == "budi@bank.com"
        assert updated.password_hash == user.password_hash

    @pytest.mark.asyncio
    async def test_update_to_taken_email(self, service):
        """Test the unique email index is enforced on update."""
        await add(service, "a@bank.com")
        user = await add(service, "b@bank.com")

        with pytest.raises(EmailAlreadyTakenError):
            await service.update_user(user.id, "Teller", "a@bank.com")

    @pytest.mark.asyncio
    async def test_update_unknown_user(self, service):
        """Test updating a non-existent operator."""
        with pytest.raises(NotFoundError):
            await service.update_user("missing", "Teller", "a@bank.com")

    @pytest.mark.asyncio
    async def test_change_password(self, service, user_repo):
        """Test the new password replaces the old one."""
        user = await add(service, "a@bank.com")

        await service.change_password(user.id, "Secret#123", "Better#456", "Better#456")

        stored = await user_repo.get(user.id)
        assert verify_password("Better#456", stored.password_hash)
        assert not verify_password("Secret#123", stored.password_hash)

    @pytest.mark.asyncio
    async def test_change_password_wrong_old(self, service):
        """Test the old password must match."""
        user = await add(service, "a@bank.com")

        with pytest.raises(InvalidCredentialsError):
            await service.change_password(user.id, "Wrong#123", "Better#456", "Better#456")

    @pytest.mark.asyncio
    async def test_change_password_unknown_user(self, service):
        """Test changing the password of a non-existent operator."""
        with pytest.raises(NotFoundError):
            await service.change_password("missing", "Secret#123", "Better#456", "Better#456")
