"""收款银行账户单元测试。"""

import os
import tempfile

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="bank_account_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

from settlement.database import get_db
from settlement.services.bank_account_service import (
    BankAccountError,
    BankAccountService,
    account_to_dict,
)

SELLER = 21


@pytest.fixture(autouse=True)
def _setup_db(reset_db):
    reset_db(_tmp.name)
    yield


@pytest.fixture
def accounts():
    return BankAccountService()


class TestAddAccount:

    def test_first_account_is_default(self, accounts):
        account = accounts.add_account(SELLER, "İş Bankası", "Ali Veli", "tr33 0006 1005 1978 6457 8413 26")
        assert account.is_default == 1
        assert account.iban_last4 == "1326"
        assert accounts.get_default_account(SELLER).id == account.id

    def test_iban_stored_encrypted(self, accounts):
        account = accounts.add_account(SELLER, "İş Bankası", "Ali Veli", "TR330006100519786457841326")
        conn = get_db()
        stored = conn.execute(
            "SELECT iban_encrypted FROM bank_accounts WHERE id = ?", (account.id,)
        ).fetchone()["iban_encrypted"]
        conn.close()
        assert "TR33" not in stored
        assert accounts.reveal_iban(account.id) == "TR330006100519786457841326"

    def test_second_account_not_default_unless_asked(self, accounts):
        first = accounts.add_account(SELLER, "A", "Ali", "TR000000000000000000000001")
        second = accounts.add_account(SELLER, "B", "Ali", "TR000000000000000000000002")
        assert second.is_default == 0

        third = accounts.add_account(SELLER, "C", "Ali", "TR000000000000000000000003", is_default=True)
        assert accounts.get_default_account(SELLER).id == third.id
        assert [a.id for a in accounts.list_accounts(SELLER)][0] == third.id
        assert accounts.get_account(SELLER, first.id).is_default == 0

    @pytest.mark.parametrize("bank,holder,iban", [
        ("", "Ali", "TR01"), ("A", "  ", "TR01"), ("A", "Ali", " "),
    ])
    def test_required_fields(self, accounts, bank, holder, iban):
        with pytest.raises(BankAccountError):
            accounts.add_account(SELLER, bank, holder, iban)


class TestDefaultAndLookup:

    def test_set_default(self, accounts):
        first = accounts.add_account(SELLER, "A", "Ali", "TR000000000000000000000001")
        second = accounts.add_account(SELLER, "B", "Ali", "TR000000000000000000000002")
        accounts.set_default(SELLER, second.id)
        assert accounts.get_default_account(SELLER).id == second.id
        assert accounts.get_account(SELLER, first.id).is_default == 0

    def test_foreign_account_hidden(self, accounts):
        account = accounts.add_account(SELLER, "A", "Ali", "TR000000000000000000000001")
        assert accounts.get_account(SELLER + 1, account.id) is None
        with pytest.raises(BankAccountError):
            accounts.set_default(SELLER + 1, account.id)

    def test_reveal_unknown(self, accounts):
        with pytest.raises(BankAccountError):
            accounts.reveal_iban(999)

    def test_account_to_dict_masks_iban(self, accounts):
        data = account_to_dict(accounts.add_account(SELLER, "A", "Ali", "TR000000000000000000009876"))
        assert data["iban_masked"] == "****9876"
        assert "iban" not in data
        assert data["is_default"] is True
