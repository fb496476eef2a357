import init_db
import seed_districts
import sms


def test_split_statements_skips_comments():
    sql = """
    -- leading comment
    CREATE TABLE a (
        id INT
    );

    INSERT INTO a VALUES (1);
    SELECT 1
    """
    statements = init_db.split_statements(sql)
    assert len(statements) == 3
    assert statements[0].strip().startswith("CREATE TABLE a")
    assert not statements[0].endswith(";")
    assert statements[2].strip() == "SELECT 1"


def test_schema_file_splits_into_tables_and_seed():
    with open(init_db.SCHEMA_PATH, encoding="utf-8") as fh:
        statements = init_db.split_statements(fh.read())
    creates = [s for s in statements if "CREATE TABLE" in s]
    assert len(creates) == 18
    assert "reward_tiers" in statements[-1]


def test_ensure_admin_creates_then_promotes(conn, query):
    first = init_db.ensure_admin(conn, "Owner", " Owner@TechNirvor.test ", "owner-pass-1")
    again = init_db.ensure_admin(conn, "Owner", "owner@technirvor.test", "owner-pass-2")
    assert first == again
    assert query("SELECT email, is_admin FROM users") == [("owner@technirvor.test", 1)]


def test_seed_districts_is_idempotent(conn, query):
    assert len(seed_districts.DISTRICTS) == 64
    assert seed_districts.seed(conn) == 64
    assert seed_districts.seed(conn) == 0
    charges = dict(query("SELECT name, delivery_charge FROM districts"))
    assert charges["Dhaka"] == seed_districts.INSIDE_DHAKA_CHARGE
    assert charges["Sylhet"] == seed_districts.OUTSIDE_DHAKA_CHARGE


def test_seed_keeps_existing_charges(conn, query, catalog_ids):
    # Dhaka, Khulna and Bhola already exist from the catalog fixture
    assert seed_districts.seed(conn) == 61
    assert dict(query("SELECT name, delivery_charge FROM districts"))["Bhola"] == 150


class TestSms:
    def test_to_international(self):
        assert sms.to_international("01712345678") == "+8801712345678"
        assert sms.to_international("8801712345678") == "+8801712345678"
        assert sms.to_international("+8801712345678") == "+8801712345678"

    def test_status_message(self):
        text = sms.build_status_message("shipped", "TN-DH-123456", "Karim", "Tech Nirvor")
        assert text == "Hi Karim, your order TN-DH-123456 has been shipped and will reach you soon. - Tech Nirvor"
        fallback = sms.build_status_message("pending", "TN-DH-123456", None, "Tech Nirvor")
        assert fallback.startswith("Hi Customer, your order TN-DH-123456 is now pending.")

    def test_send_without_credentials(self, monkeypatch):
        monkeypatch.setattr(sms, "sms", None)
        assert sms.send_sms("01712345678", "hello") is False

    def test_send_uses_international_number(self, monkeypatch):
        calls = []

        class FakeSms:
            def send(self, message, recipients, sender_id):
                calls.append((message, recipients, sender_id))
                return {"SMSMessageData": {"Message": "Sent to 1/1"}}

        monkeypatch.setattr(sms, "sms", FakeSms())
        assert sms.send_sms("01712345678", "hello") is True
        assert calls == [("hello", ["+8801712345678"], "TechNirvor")]

    def test_send_failure_is_reported(self, monkeypatch):
        class BrokenSms:
            def send(self, message, recipients, sender_id):
                raise RuntimeError("gateway down")

        monkeypatch.setattr(sms, "sms", BrokenSms())
        assert sms.send_sms("01712345678", "hello") is False
