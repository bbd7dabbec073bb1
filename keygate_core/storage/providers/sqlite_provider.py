from __future__ import annotations
from typing import Optional, Dict, Any, List
from threading import RLock
import json, sqlite3, os

from keygate_core.audit import AuditEntry
from keygate_core.errors import DuplicateRecordError, ReplayDetectedError
from keygate_core.kms.kms_base import WrappedKey
from keygate_core.logger import get_logger
from keygate_core.storage.models import AssetKeyRecord, Listing, Order, OrderState, PaymentRecord
from keygate_core.storage.provider import StorageProvider
from keygate_core.utils import canonical_json, now_ts

log = get_logger("KG.Storage")


ORDER_COLUMNS = (
    "order_id, asset_id, buyer_public_key_b64, buyer_identity, state, expected_amount, recipient, "
    "memo, tx_ref, confirmed_at, sealed_key_b64, ephemeral_public_key_b64, delivered_at, "
    "consent_accepted, consent_accepted_at, data_access_terms_accepted, access_revoked, "
    "access_revoked_at, access_revoked_reason, created_at"
)

LISTING_COLUMNS = (
    "listing_id, seller_identity, asset_ref, filename, name, description, price_lamports, mime, "
    "size, consent_required, data_access_terms, withdrawal_enabled, withdrawn_at, "
    "withdrawn_reason, created_at"
)


class SQLiteStorage(StorageProvider):
    name = "sqlite"

    def __init__(self, path="db/keygate.db"):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.db = sqlite3.connect(path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = RLock()
        self._init()
        log.info(f"[STORAGE] sqlite ready at {path}")

    def _init(self) -> None:
        c = self.db.cursor()

        c.execute("""CREATE TABLE IF NOT EXISTS listings(
            listing_id TEXT PRIMARY KEY,
            seller_identity TEXT NOT NULL,
            asset_ref TEXT NOT NULL,
            filename TEXT,
            name TEXT NOT NULL,
            description TEXT NOT NULL,
            price_lamports INTEGER NOT NULL,
            mime TEXT,
            size INTEGER,
            consent_required INTEGER NOT NULL DEFAULT 1,
            data_access_terms TEXT,
            withdrawal_enabled INTEGER NOT NULL DEFAULT 1,
            withdrawn_at TEXT,
            withdrawn_reason TEXT,
            created_at TEXT NOT NULL
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS listing_audit(
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            listing_id TEXT NOT NULL,
            ts TEXT NOT NULL,
            action TEXT NOT NULL,
            details TEXT,
            actor TEXT
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS asset_keys(
            asset_id TEXT PRIMARY KEY,
            wrapped_key_b64 TEXT NOT NULL,
            iv_b64 TEXT NOT NULL DEFAULT '',
            tag_b64 TEXT NOT NULL DEFAULT '',
            key_version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            rotated_at TEXT
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS orders(
            order_id TEXT PRIMARY KEY,
            asset_id TEXT NOT NULL,
            buyer_public_key_b64 TEXT NOT NULL,
            buyer_identity TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'PENDING',
            expected_amount INTEGER NOT NULL,
            recipient TEXT NOT NULL,
            memo TEXT NOT NULL,
            tx_ref TEXT,
            confirmed_at TEXT,
            sealed_key_b64 TEXT,
            ephemeral_public_key_b64 TEXT,
            delivered_at TEXT,
            consent_accepted INTEGER NOT NULL DEFAULT 0,
            consent_accepted_at TEXT,
            data_access_terms_accepted INTEGER NOT NULL DEFAULT 0,
            access_revoked INTEGER NOT NULL DEFAULT 0,
            access_revoked_at TEXT,
            access_revoked_reason TEXT,
            created_at TEXT NOT NULL
        )""")
        # one ledger transaction can back at most one order
        c.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_tx_ref ON orders(tx_ref) WHERE tx_ref IS NOT NULL")
        c.execute("CREATE INDEX IF NOT EXISTS idx_orders_asset_buyer ON orders(asset_id, buyer_identity, state)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_orders_state_created ON orders(state, created_at)")
        c.execute("""CREATE TABLE IF NOT EXISTS order_audit(
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT NOT NULL,
            ts TEXT NOT NULL,
            action TEXT NOT NULL,
            details TEXT,
            actor TEXT
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS events(
            ts TEXT,
            event_type TEXT,
            payload TEXT
        )""")
        for table in ("listing_audit", "order_audit"):
            for op in ("UPDATE", "DELETE"):
                c.execute(
                    f"CREATE TRIGGER IF NOT EXISTS {table}_no_{op.lower()} BEFORE {op} ON {table} "
                    f"BEGIN SELECT RAISE(ABORT, '{table} is append-only'); END"
                )

        self.db.commit()

    def _write(self, sql: str, params: tuple) -> int:
        """Run one statement in its own transaction and return the affected row count."""
        with self._lock:
            try:
                cur = self.db.execute(sql, params)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            return cur.rowcount

    def _audit(self, table: str, key: str) -> List[AuditEntry]:
        column = "listing_id" if table == "listing_audit" else "order_id"
        cur = self.db.execute(
            f"SELECT ts, action, details, actor FROM {table} WHERE {column}=? ORDER BY seq", (key,)
        )
        return [AuditEntry(action=r["action"], details=r["details"] or "", timestamp=r["ts"], actor=r["actor"])
                for r in cur.fetchall()]

    # --- listings ---

    def insert_listing(self, listing: Listing) -> None:
        with self._lock:
            try:
                self.db.execute(
                    f"INSERT INTO listings({LISTING_COLUMNS}) VALUES({','.join(['?'] * 15)})",
                    (listing.listing_id, listing.seller_identity, listing.asset_ref, listing.filename,
                     listing.name, listing.description, listing.price_lamports, listing.mime,
                     listing.size, int(listing.consent_required), listing.data_access_terms,
                     int(listing.withdrawal_enabled), listing.withdrawn_at, listing.withdrawn_reason,
                     listing.created_at),
                )
                for e in listing.audit_log:
                    self._insert_audit("listing_audit", "listing_id", listing.listing_id, e)
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                raise DuplicateRecordError(f"Listing {listing.listing_id} already exists")

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        with self._lock:
            row = self.db.execute(f"SELECT {LISTING_COLUMNS} FROM listings WHERE listing_id=?",
                                  (listing_id,)).fetchone()
            if not row:
                return None
            return Listing(
                listing_id=row["listing_id"],
                seller_identity=row["seller_identity"],
                asset_ref=row["asset_ref"],
                filename=row["filename"],
                name=row["name"],
                description=row["description"],
                price_lamports=row["price_lamports"],
                mime=row["mime"],
                size=row["size"],
                consent_required=bool(row["consent_required"]),
                data_access_terms=row["data_access_terms"] or "",
                withdrawal_enabled=bool(row["withdrawal_enabled"]),
                withdrawn_at=row["withdrawn_at"],
                withdrawn_reason=row["withdrawn_reason"],
                audit_log=self._audit("listing_audit", listing_id),
                created_at=row["created_at"],
            )

    def mark_listing_withdrawn(self, listing_id: str, withdrawn_at: str, reason: str) -> bool:
        return self._write(
            "UPDATE listings SET withdrawn_at=?, withdrawn_reason=?, withdrawal_enabled=0 "
            "WHERE listing_id=? AND withdrawn_at IS NULL",
            (withdrawn_at, reason, listing_id),
        ) == 1

    def _insert_audit(self, table: str, column: str, key: str, e: AuditEntry) -> None:
        self.db.execute(
            f"INSERT INTO {table}({column}, ts, action, details, actor) VALUES(?,?,?,?,?)",
            (key, e.timestamp, e.action, e.details, e.actor),
        )

    def append_listing_audit(self, listing_id: str, entry: AuditEntry) -> None:
        with self._lock:
            self._insert_audit("listing_audit", "listing_id", listing_id, entry)
            self.db.commit()

    # --- asset keys ---

    def insert_asset_key(self, rec: AssetKeyRecord) -> None:
        try:
            self._write(
                "INSERT INTO asset_keys(asset_id, wrapped_key_b64, iv_b64, tag_b64, key_version, created_at, rotated_at) "
                "VALUES(?,?,?,?,?,?,?)",
                (rec.asset_id, rec.wrapped_key_b64, rec.iv_b64, rec.tag_b64, rec.key_version,
                 rec.created_at, rec.rotated_at),
            )
        except sqlite3.IntegrityError:
            raise DuplicateRecordError(f"Asset key for {rec.asset_id} already exists")

    def get_asset_key(self, asset_id: str) -> Optional[AssetKeyRecord]:
        with self._lock:
            row = self.db.execute(
                "SELECT asset_id, wrapped_key_b64, iv_b64, tag_b64, key_version, created_at, rotated_at "
                "FROM asset_keys WHERE asset_id=?", (asset_id,)
            ).fetchone()
        if not row:
            return None
        return AssetKeyRecord(*row)

    def replace_asset_key(self, asset_id: str, expected_version: int,
                          wrapped: WrappedKey, rotated_at: str) -> bool:
        return self._write(
            "UPDATE asset_keys SET wrapped_key_b64=?, iv_b64=?, tag_b64=?, key_version=?, rotated_at=? "
            "WHERE asset_id=? AND key_version=?",
            (wrapped.wrapped_key_b64, wrapped.iv_b64, wrapped.tag_b64, wrapped.key_version,
             rotated_at, asset_id, expected_version),
        ) == 1

    # --- orders ---

    def insert_order(self, order: Order) -> None:
        p = order.payment
        with self._lock:
            try:
                self.db.execute(
                    f"INSERT INTO orders({ORDER_COLUMNS}) VALUES({','.join(['?'] * 20)})",
                    (order.order_id, order.asset_id, order.buyer_public_key_b64, order.buyer_identity,
                     order.state.value, p.expected_amount, p.recipient, p.memo, p.tx_ref, p.confirmed_at,
                     order.sealed_key_b64, order.ephemeral_public_key_b64, order.delivered_at,
                     int(order.consent_accepted), order.consent_accepted_at,
                     int(order.data_access_terms_accepted), int(order.access_revoked),
                     order.access_revoked_at, order.access_revoked_reason, order.created_at),
                )
                for e in order.audit_log:
                    self._insert_audit("order_audit", "order_id", order.order_id, e)
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                raise DuplicateRecordError(f"Order {order.order_id} already exists")

    def _order_from_row(self, row: sqlite3.Row) -> Order:
        return Order(
            order_id=row["order_id"],
            asset_id=row["asset_id"],
            buyer_public_key_b64=row["buyer_public_key_b64"],
            buyer_identity=row["buyer_identity"],
            payment=PaymentRecord(
                expected_amount=row["expected_amount"],
                recipient=row["recipient"],
                memo=row["memo"],
                tx_ref=row["tx_ref"],
                confirmed_at=row["confirmed_at"],
            ),
            state=OrderState(row["state"]),
            sealed_key_b64=row["sealed_key_b64"],
            ephemeral_public_key_b64=row["ephemeral_public_key_b64"],
            delivered_at=row["delivered_at"],
            consent_accepted=bool(row["consent_accepted"]),
            consent_accepted_at=row["consent_accepted_at"],
            data_access_terms_accepted=bool(row["data_access_terms_accepted"]),
            access_revoked=bool(row["access_revoked"]),
            access_revoked_at=row["access_revoked_at"],
            access_revoked_reason=row["access_revoked_reason"],
            audit_log=self._audit("order_audit", row["order_id"]),
            created_at=row["created_at"],
        )

    def _fetch_order(self, where: str, params: tuple) -> Optional[Order]:
        with self._lock:
            row = self.db.execute(f"SELECT {ORDER_COLUMNS} FROM orders WHERE {where} LIMIT 1", params).fetchone()
            return self._order_from_row(row) if row else None

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._fetch_order("order_id=?", (order_id,))

    def find_order_by_tx_ref(self, tx_ref: str) -> Optional[Order]:
        return self._fetch_order("tx_ref=?", (tx_ref,))

    def find_active_delivery(self, asset_id: str, buyer_identity: str) -> Optional[Order]:
        return self._fetch_order(
            "asset_id=? AND buyer_identity=? AND state='DELIVERED' AND access_revoked=0",
            (asset_id, buyer_identity),
        )

    def list_pending_before(self, cutoff_ts: str) -> List[str]:
        with self._lock:
            cur = self.db.execute(
                "SELECT order_id FROM orders WHERE state='PENDING' AND created_at < ?", (cutoff_ts,)
            )
            return [r["order_id"] for r in cur.fetchall()]

    def attach_payment(self, order_id: str, tx_ref: str, confirmed_at: str) -> bool:
        try:
            return self._write(
                "UPDATE orders SET state='PAID', tx_ref=?, confirmed_at=? WHERE order_id=? AND state='PENDING'",
                (tx_ref, confirmed_at, order_id),
            ) == 1
        except sqlite3.IntegrityError:
            raise ReplayDetectedError("Transaction reference already used by another order")

    def complete_delivery(self, order_id: str, sealed_key_b64: str,
                          ephemeral_pub_b64: str, delivered_at: str) -> bool:
        return self._write(
            "UPDATE orders SET state='DELIVERED', sealed_key_b64=?, ephemeral_public_key_b64=?, delivered_at=? "
            "WHERE order_id=? AND state='PAID' AND sealed_key_b64 IS NULL",
            (sealed_key_b64, ephemeral_pub_b64, delivered_at, order_id),
        ) == 1

    def heal_delivery(self, order_id: str) -> bool:
        return self._write(
            "UPDATE orders SET state='DELIVERED', delivered_at=COALESCE(delivered_at, ?) "
            "WHERE order_id=? AND state='PAID' AND sealed_key_b64 IS NOT NULL",
            (now_ts(), order_id),
        ) == 1

    def mark_revoked(self, order_id: str, revoked_at: str, reason: str) -> bool:
        return self._write(
            "UPDATE orders SET access_revoked=1, access_revoked_at=?, access_revoked_reason=? "
            "WHERE order_id=? AND state='DELIVERED' AND access_revoked=0",
            (revoked_at, reason, order_id),
        ) == 1

    def mark_expired(self, order_id: str) -> bool:
        return self._write(
            "UPDATE orders SET state='EXPIRED' WHERE order_id=? AND state='PENDING'", (order_id,)
        ) == 1

    def append_order_audit(self, order_id: str, entry: AuditEntry) -> None:
        with self._lock:
            self._insert_audit("order_audit", "order_id", order_id, entry)
            self.db.commit()

    # --- events ---

    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        self._write("INSERT INTO events(ts,event_type,payload) VALUES(?,?,?)",
                    (now_ts(), event_type, canonical_json(payload)))

    def list_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            cur = self.db.execute("SELECT ts, event_type, payload FROM events ORDER BY rowid")
            return [{"ts": r["ts"], "event_type": r["event_type"], "payload": json.loads(r["payload"])}
                    for r in cur.fetchall()]

    def close(self):
        self.db.close()
