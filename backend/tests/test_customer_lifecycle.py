import sqlite3
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
import sys
from unittest.mock import patch

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402
from errors import InvalidTransition, NotFound, PartialTransitionFailure, VersionConflict  # noqa: E402
from models import Customer  # noqa: E402
from stage_history import StageHistoryLog  # noqa: E402
import lifecycle  # noqa: E402
import store  # noqa: E402
from store import insert_customer  # noqa: E402


class CustomerLifecycleTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.temp_root = Path(cls.tempdir.name)
        cls.test_db_path = cls.temp_root / "test.db"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        main.DB_PATH = self.test_db_path
        main.init_db()
        self.lifecycle = main.get_lifecycle()
        self.history = main.get_history_log()

    def _seed_customer(self, customer_id: str, stage: str, version: int) -> Customer:
        created_at = datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)
        customer = Customer(
            id=customer_id,
            first_name="Jane",
            last_name="Doe",
            current_stage=stage,
            created_at=created_at,
            updated_at=created_at,
            version=version,
        )
        store = main.get_store()
        with store.connect() as conn:
            insert_customer(conn, customer)
            conn.commit()
        return customer

    def test_forward_move_from_document_verification(self) -> None:
        self._seed_customer("GKF00042", "document-verification", version=3)

        transition = self.lifecycle.move_stage("GKF00042", "forward", "alice")

        self.assertEqual(transition.customer.current_stage, "decision-in-principle")
        self.assertEqual(transition.customer.version, 4)
        stored = self.lifecycle.get_customer("GKF00042")
        self.assertEqual(stored.current_stage, "decision-in-principle")
        self.assertEqual(stored.version, 4)

        history = self.history.list_for_customer("GKF00042", page=1, page_size=10)
        self.assertEqual(history.total_count, 1)
        entry = history.items[0]
        self.assertEqual(entry.previous_stage, "document-verification")
        self.assertEqual(entry.stage, "decision-in-principle")
        self.assertEqual(entry.direction, "forward")
        self.assertEqual(entry.user, "alice")
        self.assertEqual(entry.notes, "Stage moved forward")
        self.assertEqual(entry.id, transition.history_entry.id)

    def test_backward_move_records_direction_and_note(self) -> None:
        self._seed_customer("GKF00043", "offer-generated", version=1)

        transition = self.lifecycle.move_stage(
            "GKF00043", "backward", "bob", note="Lender asked for new valuation", expected_version=1
        )

        self.assertEqual(transition.customer.current_stage, "case-submitted-network")
        self.assertEqual(transition.history_entry.direction, "backward")
        self.assertEqual(transition.history_entry.previous_stage, "offer-generated")
        self.assertEqual(transition.history_entry.notes, "Lender asked for new valuation")

    def test_backward_from_first_stage_is_rejected(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")
        before = self.history.list_for_customer(customer.id).total_count

        with self.assertRaises(InvalidTransition):
            self.lifecycle.move_stage(customer.id, "backward", "alice", expected_version=customer.version)

        unchanged = self.lifecycle.get_customer(customer.id)
        self.assertEqual(unchanged.current_stage, "initial-enquiry-assessment")
        self.assertEqual(unchanged.version, customer.version)
        self.assertEqual(self.history.list_for_customer(customer.id).total_count, before)

    def test_forward_from_last_stage_is_rejected(self) -> None:
        self._seed_customer("GKF00044", "exchange-completion", version=7)
        with self.assertRaises(InvalidTransition):
            self.lifecycle.move_stage("GKF00044", "forward", "alice")
        self.assertEqual(self.lifecycle.get_customer("GKF00044").version, 7)

    def test_unknown_direction_is_rejected(self) -> None:
        self._seed_customer("GKF00045", "offer-generated", version=1)
        with self.assertRaises(InvalidTransition):
            self.lifecycle.move_stage("GKF00045", "sideways", "alice")

    def test_missing_customer_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self.lifecycle.move_stage("GKF99999", "forward", "alice")

    def test_stale_version_is_a_conflict(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")
        self.lifecycle.move_stage(customer.id, "forward", "alice", expected_version=customer.version)

        with self.assertRaises(VersionConflict) as exc:
            self.lifecycle.move_stage(customer.id, "forward", "bob", expected_version=customer.version)

        self.assertEqual(exc.exception.expected_version, customer.version)
        self.assertEqual(exc.exception.actual_version, customer.version + 1)
        stored = self.lifecycle.get_customer(customer.id)
        self.assertEqual(stored.current_stage, "document-verification")
        # initial entry plus the one successful move
        self.assertEqual(self.history.list_for_customer(customer.id).total_count, 2)

    def test_history_failure_after_customer_write_is_partial(self) -> None:
        self._seed_customer("GKF00046", "decision-in-principle", version=2)

        with patch.object(StageHistoryLog, "append", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertRaises(PartialTransitionFailure) as exc:
                self.lifecycle.move_stage("GKF00046", "forward", "alice", expected_version=2)

        failure = exc.exception
        self.assertEqual(failure.previous_stage, "decision-in-principle")
        self.assertEqual(failure.stage, "application-submitted-lender")
        self.assertIsNotNone(failure.job_id)
        # the customer write is kept
        stored = self.lifecycle.get_customer("GKF00046")
        self.assertEqual(stored.current_stage, "application-submitted-lender")
        self.assertEqual(stored.version, 3)
        self.assertEqual(self.history.list_for_customer("GKF00046").total_count, 0)

        replayed = self.lifecycle.reconcile_pending()

        self.assertEqual(len(replayed), 1)
        history = self.history.list_for_customer("GKF00046")
        self.assertEqual(history.total_count, 1)
        self.assertEqual(history.items[0].previous_stage, "decision-in-principle")
        self.assertEqual(history.items[0].stage, "application-submitted-lender")
        self.assertEqual(history.items[0].user, "alice")
        self.assertEqual(self.lifecycle.reconcile_pending(), [])

    def test_repeated_idempotency_key_moves_once(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")

        first = self.lifecycle.move_stage(
            customer.id, "forward", "alice", expected_version=customer.version, idempotency_key="click-1"
        )
        second = self.lifecycle.move_stage(
            customer.id, "forward", "alice", expected_version=customer.version, idempotency_key="click-1"
        )

        self.assertEqual(first.history_entry.id, second.history_entry.id)
        stored = self.lifecycle.get_customer(customer.id)
        self.assertEqual(stored.current_stage, "document-verification")
        self.assertEqual(stored.version, customer.version + 1)
        self.assertEqual(self.history.list_for_customer(customer.id).total_count, 2)

    def test_progress_and_move_affordances(self) -> None:
        first = self._seed_customer("GKF00047", "initial-enquiry-assessment", version=1)
        last = self._seed_customer("GKF00048", "exchange-completion", version=1)
        middle = self._seed_customer("GKF00049", "offer-generated", version=1)

        self.assertEqual(self.lifecycle.current_progress(first), 9)
        self.assertEqual(self.lifecycle.current_progress(last), 100)
        self.assertFalse(self.lifecycle.can_move_backward(first))
        self.assertTrue(self.lifecycle.can_move_forward(first))
        self.assertFalse(self.lifecycle.can_move_forward(last))
        self.assertTrue(self.lifecycle.can_move_backward(last))
        self.assertTrue(self.lifecycle.can_move_forward(middle))
        self.assertTrue(self.lifecycle.can_move_backward(middle))

    def test_create_customer_assigns_sequential_ids_and_initial_entry(self) -> None:
        first = self.lifecycle.create_customer("Ada", "Lovelace")
        second = self.lifecycle.create_customer(
            "Alan",
            "Turing",
            enquiry_id="ENQ0007",
            enquiry_notes="Remortgage enquiry",
            actor="carol",
        )

        self.assertEqual(first.id, "GKF00001")
        self.assertEqual(second.id, "GKF00002")
        self.assertEqual(first.version, 1)
        self.assertEqual(second.current_stage, "initial-enquiry-assessment")
        self.assertTrue(second.converted_from_enquiry)

        entry = self.history.list_for_customer(second.id).items[0]
        self.assertEqual(entry.direction, "initial")
        self.assertIsNone(entry.previous_stage)
        self.assertEqual(entry.notes, "Converted from enquiry ENQ0007: Remortgage enquiry")
        self.assertEqual(entry.user, "carol")

    def test_create_customer_rejects_unknown_stage(self) -> None:
        with self.assertRaises(ValueError):
            self.lifecycle.create_customer("Ada", "Lovelace", current_stage="not-a-stage")

    def test_document_received_is_versioned(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")

        updated = self.lifecycle.mark_document_received(customer.id, "payslips", expected_version=customer.version)

        self.assertEqual(updated.documents, {"payslips": "received"})
        self.assertEqual(updated.version, customer.version + 1)
        with self.assertRaises(VersionConflict):
            self.lifecycle.mark_document_received(customer.id, "idDocument", expected_version=customer.version)
        self.assertEqual(self.lifecycle.get_customer(customer.id).documents, {"payslips": "received"})

    def test_joint_holder_edits_cannot_overwrite_each_other(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")
        holder = {"firstName": "Charles", "lastName": "Babbage"}

        updated = self.lifecycle.update_customer(
            customer.id, customer.version, {"joint_holders": [holder], "customer_account_type": "Joint"}
        )

        self.assertEqual(updated.joint_holders, [holder])
        self.assertEqual(updated.customer_account_type, "Joint")
        with self.assertRaises(VersionConflict):
            self.lifecycle.update_customer(customer.id, customer.version, {"joint_holders": []})
        self.assertEqual(self.lifecycle.get_customer(customer.id).joint_holders, [holder])

    def test_update_customer_cannot_change_stage(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")
        with self.assertRaises(ValueError):
            self.lifecycle.update_customer(customer.id, customer.version, {"current_stage": "offer-generated"})
        with self.assertRaises(ValueError):
            self.lifecycle.update_customer(customer.id, customer.version, {"nickname": "Countess"})

    def test_null_for_required_field_is_rejected_and_customer_stays_readable(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace", email="ada@example.com")

        for field in ("joint_holders", "first_name", "last_name", "customer_account_type"):
            with self.subTest(field=field):
                with self.assertRaises(ValueError):
                    self.lifecycle.update_customer(customer.id, customer.version, {field: None})

        stored = self.lifecycle.get_customer(customer.id)
        self.assertEqual(stored.version, customer.version)
        self.assertEqual(stored.joint_holders, [])

        cleared = self.lifecycle.update_customer(customer.id, customer.version, {"email": None})
        self.assertIsNone(cleared.email)
        self.assertIsNone(self.lifecycle.get_customer(customer.id).email)

    def test_invalid_document_is_never_written(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")
        db = main.get_store()

        with db.connect() as conn:
            with self.assertRaises(ValueError):
                store.update_customer(
                    conn,
                    customer.id,
                    customer.version,
                    lambda current: current.model_copy(update={"joint_holders": None}),
                )
            conn.commit()

        stored = self.lifecycle.get_customer(customer.id)
        self.assertEqual(stored.version, customer.version)
        self.assertEqual(stored.joint_holders, [])

    def test_writer_landing_between_read_and_update_is_a_conflict(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")
        db = main.get_store()

        def interleaved_writer(current: Customer) -> Customer:
            with db.connect() as other:
                other.execute("UPDATE Customer SET version = version + 1 WHERE id = ?", (customer.id,))
                other.commit()
            return current.model_copy(update={"phone": "07700 900000"})

        with db.connect() as conn:
            with self.assertRaises(VersionConflict) as exc:
                store.update_customer(conn, customer.id, customer.version, interleaved_writer)
            conn.rollback()

        self.assertEqual(exc.exception.expected_version, customer.version)
        self.assertEqual(exc.exception.actual_version, customer.version + 1)
        self.assertIsNone(self.lifecycle.get_customer(customer.id).phone)

    def test_customer_ids_keep_counting_past_five_digits(self) -> None:
        self._seed_customer("GKF99999", "initial-enquiry-assessment", version=1)

        first = self.lifecycle.create_customer("Ada", "Lovelace")
        second = self.lifecycle.create_customer("Alan", "Turing")

        self.assertEqual(first.id, "GKF100000")
        self.assertEqual(second.id, "GKF100001")

    def test_create_customer_retries_when_id_is_taken(self) -> None:
        self._seed_customer("GKF00001", "initial-enquiry-assessment", version=1)

        with patch.object(lifecycle, "next_customer_id", side_effect=["GKF00001", "GKF00002"]):
            created = self.lifecycle.create_customer("Ada", "Lovelace")

        self.assertEqual(created.id, "GKF00002")
        self.assertEqual(self.lifecycle.get_customer("GKF00001").first_name, "Jane")
        self.assertEqual(self.history.list_for_customer("GKF00002").total_count, 1)

    def test_replayed_move_returns_the_original_response(self) -> None:
        customer = self.lifecycle.create_customer("Ada", "Lovelace")
        first = self.lifecycle.move_stage(
            customer.id, "forward", "alice", expected_version=customer.version, idempotency_key="click-1"
        )
        self.lifecycle.move_stage(customer.id, "forward", "bob", expected_version=first.customer.version)

        replayed = self.lifecycle.move_stage(
            customer.id, "forward", "alice", expected_version=customer.version, idempotency_key="click-1"
        )

        self.assertEqual(replayed.history_entry.id, first.history_entry.id)
        self.assertEqual(replayed.customer.current_stage, "document-verification")
        self.assertEqual(replayed.customer.version, first.customer.version)
        self.assertEqual(self.lifecycle.get_customer(customer.id).current_stage, "decision-in-principle")


if __name__ == "__main__":
    unittest.main()
