"""
Token Service Data Repository

Data access layer - PostgreSQL (asyncpg)
Implements LedgerRepositoryProtocol from protocols.py

Every ledger write is a single conditional UPDATE on (user_id, version);
a write that matches no row lost a race and returns None.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.config_manager import ConfigManager
from core.postgres_client import AsyncPostgresClient

from .models import (
    BonusGrant,
    LifecycleState,
    Plan,
    SettlementTransaction,
    SubjectType,
    SubscriptionWindow,
    TokenLedger,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS {schema};

CREATE TABLE IF NOT EXISTS {schema}.{ledgers} (
    user_id              VARCHAR(100) PRIMARY KEY,
    daily_balance        INTEGER      NOT NULL DEFAULT 0 CHECK (daily_balance >= 0),
    daily_spent_today    INTEGER      NOT NULL DEFAULT 0 CHECK (daily_spent_today >= 0),
    monthly_allocation   INTEGER      NOT NULL DEFAULT 0 CHECK (monthly_allocation >= 0),
    monthly_spent        INTEGER      NOT NULL DEFAULT 0 CHECK (monthly_spent >= 0),
    monthly_remaining    INTEGER      NOT NULL DEFAULT 0 CHECK (monthly_remaining >= 0),
    total_spent_lifetime BIGINT       NOT NULL DEFAULT 0 CHECK (total_spent_lifetime >= 0),
    bonus_amount         INTEGER      NOT NULL DEFAULT 0 CHECK (bonus_amount >= 0),
    bonus_granted_at     TIMESTAMPTZ,
    bonus_expires_at     TIMESTAMPTZ,
    bonus_granted_by     VARCHAR(100),
    bonus_reason         TEXT,
    plan_ref             VARCHAR(100),
    start_date           TIMESTAMPTZ,
    end_date             TIMESTAMPTZ,
    daily_rate           INTEGER      NOT NULL DEFAULT 0 CHECK (daily_rate >= 0),
    last_refreshed_at    TIMESTAMPTZ,
    active               BOOLEAN      NOT NULL DEFAULT FALSE,
    auto_renew           BOOLEAN      NOT NULL DEFAULT TRUE,
    lifecycle_state      VARCHAR(32),
    version              INTEGER      NOT NULL DEFAULT 0,
    created_at           TIMESTAMPTZ  NOT NULL DEFAULT NOW(),
    updated_at           TIMESTAMPTZ  NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_{ledgers}_subscribed
    ON {schema}.{ledgers} (user_id) WHERE plan_ref IS NOT NULL;

CREATE TABLE IF NOT EXISTS {schema}.{plans} (
    plan_id        VARCHAR(100) PRIMARY KEY,
    name           VARCHAR(200)   NOT NULL,
    price          NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
    duration_days  INTEGER        NOT NULL CHECK (duration_days > 0),
    daily_rate     INTEGER        NOT NULL CHECK (daily_rate > 0),
    created_at     TIMESTAMPTZ    NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS {schema}.{transactions} (
    transaction_id          VARCHAR(100) PRIMARY KEY,
    user_id                 VARCHAR(100)   NOT NULL,
    status                  VARCHAR(20)    NOT NULL DEFAULT 'pending',
    subject_type            VARCHAR(20)    NOT NULL,
    subject_ref             VARCHAR(100)   NOT NULL,
    tokens                  INTEGER,
    amount                  NUMERIC(12, 2) NOT NULL DEFAULT 0,
    reconciliation_required BOOLEAN        NOT NULL DEFAULT FALSE,
    created_at              TIMESTAMPTZ    NOT NULL DEFAULT NOW(),
    updated_at              TIMESTAMPTZ    NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_{transactions}_user_topups
    ON {schema}.{transactions} (user_id, subject_type, status, updated_at);
"""


class LedgerRepository:
    """Token ledger repository - PostgreSQL (Async)"""

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        db: Optional[AsyncPostgresClient] = None,
    ):
        if db is None:
            # Use config_manager for service discovery
            if config is None:
                config = ConfigManager("token_service")

            # Priority: environment variable → localhost fallback
            host, port = config.discover_service(
                service_name='postgres_service',
                default_host='localhost',
                default_port=5432,
                env_host_key='POSTGRES_HOST',
                env_port_key='POSTGRES_PORT'
            )
            infra = config.get_service_config().infra

            logger.info(f"Connecting to PostgreSQL at {host}:{port}")
            db = AsyncPostgresClient(
                host=host,
                port=port,
                database=infra.postgres_db,
                username=infra.postgres_user,
                password=infra.postgres_password,
                user_id="token_service",
                min_size=infra.postgres_min_pool_size,
                max_size=infra.postgres_max_pool_size,
            )

        self.db = db
        self.schema = "token"
        self.ledgers_table = "user_ledgers"
        self.plans_table = "plans"
        self.transactions_table = "settlement_transactions"

    async def initialize(self):
        """Create schema and tables if missing"""
        ddl = SCHEMA_SQL.format(
            schema=self.schema,
            ledgers=self.ledgers_table,
            plans=self.plans_table,
            transactions=self.transactions_table,
        )
        async with self.db:
            await self.db.execute_script(ddl)
        logger.info("Token repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Token repository database connection closed")

    # ====================
    # Ledgers
    # ====================

    async def create_ledger(self, user_id: str, now: datetime) -> Optional[TokenLedger]:
        """Insert a zero ledger; None if the user already has one"""
        query = f'''
            INSERT INTO {self.schema}.{self.ledgers_table} (user_id, created_at, updated_at)
            VALUES ($1, $2, $2)
            ON CONFLICT (user_id) DO NOTHING
            RETURNING *
        '''
        try:
            async with self.db:
                row = await self.db.query_row(query, params=[user_id, now])
            return self._row_to_ledger(row) if row else None
        except Exception as e:
            logger.error(f"Error creating ledger for {user_id}: {e}", exc_info=True)
            raise

    async def get_ledger(self, user_id: str) -> Optional[TokenLedger]:
        query = f'''
            SELECT * FROM {self.schema}.{self.ledgers_table}
            WHERE user_id = $1
        '''
        try:
            async with self.db:
                row = await self.db.query_row(query, params=[user_id])
            return self._row_to_ledger(row) if row else None
        except Exception as e:
            logger.error(f"Error getting ledger for {user_id}: {e}")
            raise

    async def compare_and_swap(
        self, ledger: TokenLedger, expected_version: int, now: datetime
    ) -> Optional[TokenLedger]:
        """Write all mutable fields if the version is unchanged"""
        bonus = ledger.bonus
        window = ledger.window
        query = f'''
            UPDATE {self.schema}.{self.ledgers_table}
            SET daily_balance = $3,
                daily_spent_today = $4,
                monthly_allocation = $5,
                monthly_spent = $6,
                monthly_remaining = $7,
                total_spent_lifetime = $8,
                bonus_amount = $9,
                bonus_granted_at = $10,
                bonus_expires_at = $11,
                bonus_granted_by = $12,
                bonus_reason = $13,
                plan_ref = $14,
                start_date = $15,
                end_date = $16,
                daily_rate = $17,
                last_refreshed_at = $18,
                active = $19,
                auto_renew = $20,
                lifecycle_state = $21,
                version = version + 1,
                updated_at = $22
            WHERE user_id = $1 AND version = $2
            RETURNING *
        '''
        params = [
            ledger.user_id,
            expected_version,
            ledger.daily_balance,
            ledger.daily_spent_today,
            ledger.monthly_allocation,
            ledger.monthly_spent,
            ledger.monthly_remaining,
            ledger.total_spent_lifetime,
            bonus.amount,
            bonus.granted_at,
            bonus.expires_at,
            bonus.granted_by,
            bonus.reason,
            window.plan_ref,
            window.start_date,
            window.end_date,
            window.daily_rate,
            window.last_refreshed_at,
            window.active,
            window.auto_renew,
            window.lifecycle_state.value if window.lifecycle_state else None,
            now,
        ]
        try:
            async with self.db:
                row = await self.db.query_row(query, params=params)
        except Exception as e:
            logger.error(f"Error writing ledger for {ledger.user_id}: {e}", exc_info=True)
            raise

        if row is None:
            logger.debug(f"Version {expected_version} of ledger {ledger.user_id} is stale")
            return None
        return self._row_to_ledger(row)

    async def delete_ledger(self, user_id: str) -> bool:
        query = f"DELETE FROM {self.schema}.{self.ledgers_table} WHERE user_id = $1"
        try:
            async with self.db:
                deleted = await self.db.execute(query, params=[user_id])
            logger.info(f"Deleted ledger for user {user_id}: {deleted} row(s)")
            return deleted > 0
        except Exception as e:
            logger.error(f"Error deleting ledger for {user_id}: {e}")
            raise

    async def list_subscribed_ledgers(
        self, after_user_id: Optional[str], limit: int
    ) -> List[TokenLedger]:
        """Keyset page over ledgers with a plan reference"""
        if after_user_id is None:
            query = f'''
                SELECT * FROM {self.schema}.{self.ledgers_table}
                WHERE plan_ref IS NOT NULL
                ORDER BY user_id
                LIMIT $1
            '''
            params: List[Any] = [limit]
        else:
            query = f'''
                SELECT * FROM {self.schema}.{self.ledgers_table}
                WHERE plan_ref IS NOT NULL AND user_id > $1
                ORDER BY user_id
                LIMIT $2
            '''
            params = [after_user_id, limit]

        try:
            async with self.db:
                rows = await self.db.query(query, params=params)
            return [self._row_to_ledger(row) for row in rows] if rows else []
        except Exception as e:
            logger.error(f"Error listing subscribed ledgers after {after_user_id}: {e}")
            raise

    # ====================
    # Plans
    # ====================

    async def create_plan(self, plan: Plan) -> Optional[Plan]:
        query = f'''
            INSERT INTO {self.schema}.{self.plans_table} (
                plan_id, name, price, duration_days, daily_rate, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (plan_id) DO NOTHING
            RETURNING *
        '''
        params = [plan.plan_id, plan.name, plan.price, plan.duration_days, plan.daily_rate, plan.created_at]
        try:
            async with self.db:
                row = await self.db.query_row(query, params=params)
            return self._row_to_plan(row) if row else None
        except Exception as e:
            logger.error(f"Error creating plan {plan.plan_id}: {e}", exc_info=True)
            raise

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        query = f'''
            SELECT * FROM {self.schema}.{self.plans_table}
            WHERE plan_id = $1
        '''
        try:
            async with self.db:
                row = await self.db.query_row(query, params=[plan_id])
            return self._row_to_plan(row) if row else None
        except Exception as e:
            logger.error(f"Error getting plan {plan_id}: {e}")
            raise

    # ====================
    # Settlement Transactions
    # ====================

    async def create_transaction(self, txn: SettlementTransaction) -> SettlementTransaction:
        query = f'''
            INSERT INTO {self.schema}.{self.transactions_table} (
                transaction_id, user_id, status, subject_type, subject_ref,
                tokens, amount, reconciliation_required, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING *
        '''
        params = [
            txn.transaction_id,
            txn.user_id,
            txn.status.value,
            txn.subject_type.value,
            txn.subject_ref,
            txn.tokens,
            txn.amount,
            txn.reconciliation_required,
            txn.created_at,
            txn.updated_at or txn.created_at,
        ]
        try:
            async with self.db:
                row = await self.db.query_row(query, params=params)
            if not row:
                raise RuntimeError(f"Failed to create transaction {txn.transaction_id}")
            return self._row_to_transaction(row)
        except Exception as e:
            logger.error(f"Error creating transaction {txn.transaction_id}: {e}", exc_info=True)
            raise

    async def get_transaction(self, transaction_id: str) -> Optional[SettlementTransaction]:
        query = f'''
            SELECT * FROM {self.schema}.{self.transactions_table}
            WHERE transaction_id = $1
        '''
        try:
            async with self.db:
                row = await self.db.query_row(query, params=[transaction_id])
            return self._row_to_transaction(row) if row else None
        except Exception as e:
            logger.error(f"Error getting transaction {transaction_id}: {e}")
            raise

    async def transition_transaction(
        self,
        transaction_id: str,
        from_statuses: List[TransactionStatus],
        to_status: TransactionStatus,
        now: datetime,
    ) -> Optional[SettlementTransaction]:
        """Conditional status flip; None when the status already moved"""
        query = f'''
            UPDATE {self.schema}.{self.transactions_table}
            SET status = $2, updated_at = $3
            WHERE transaction_id = $1 AND status = ANY($4::varchar[])
            RETURNING *
        '''
        params = [transaction_id, to_status.value, now, [s.value for s in from_statuses]]
        try:
            async with self.db:
                row = await self.db.query_row(query, params=params)
            return self._row_to_transaction(row) if row else None
        except Exception as e:
            logger.error(f"Error updating transaction {transaction_id} to {to_status.value}: {e}")
            raise

    async def flag_reconciliation(self, transaction_id: str, now: datetime) -> bool:
        query = f'''
            UPDATE {self.schema}.{self.transactions_table}
            SET reconciliation_required = TRUE, updated_at = $2
            WHERE transaction_id = $1
        '''
        try:
            async with self.db:
                updated = await self.db.execute(query, params=[transaction_id, now])
            return updated > 0
        except Exception as e:
            logger.error(f"Error flagging transaction {transaction_id} for reconciliation: {e}")
            raise

    async def count_completed_topups(self, user_id: str, since: datetime, until: datetime) -> int:
        query = f'''
            SELECT COUNT(*) AS topups FROM {self.schema}.{self.transactions_table}
            WHERE user_id = $1
              AND subject_type = $2
              AND status = $3
              AND updated_at >= $4 AND updated_at < $5
        '''
        params = [user_id, SubjectType.TOKEN_TOPUP.value, TransactionStatus.COMPLETED.value, since, until]
        try:
            async with self.db:
                row = await self.db.query_row(query, params=params)
            return int(row["topups"]) if row else 0
        except Exception as e:
            logger.error(f"Error counting top-ups for {user_id}: {e}")
            raise

    # ====================
    # Helper Methods
    # ====================

    def _row_to_ledger(self, row: Dict[str, Any]) -> TokenLedger:
        state = row.get("lifecycle_state")
        return TokenLedger(
            user_id=row["user_id"],
            daily_balance=row.get("daily_balance") or 0,
            daily_spent_today=row.get("daily_spent_today") or 0,
            monthly_allocation=row.get("monthly_allocation") or 0,
            monthly_spent=row.get("monthly_spent") or 0,
            monthly_remaining=row.get("monthly_remaining") or 0,
            total_spent_lifetime=row.get("total_spent_lifetime") or 0,
            bonus=BonusGrant(
                amount=row.get("bonus_amount") or 0,
                granted_at=row.get("bonus_granted_at"),
                expires_at=row.get("bonus_expires_at"),
                granted_by=row.get("bonus_granted_by"),
                reason=row.get("bonus_reason"),
            ),
            window=SubscriptionWindow(
                plan_ref=row.get("plan_ref"),
                start_date=row.get("start_date"),
                end_date=row.get("end_date"),
                daily_rate=row.get("daily_rate") or 0,
                last_refreshed_at=row.get("last_refreshed_at"),
                active=bool(row.get("active")),
                auto_renew=row.get("auto_renew", True) is not False,
                lifecycle_state=LifecycleState(state) if state else None,
            ),
            version=row.get("version") or 0,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_plan(self, row: Dict[str, Any]) -> Plan:
        return Plan(
            plan_id=row["plan_id"],
            name=row["name"],
            price=float(row["price"]),
            duration_days=row["duration_days"],
            daily_rate=row["daily_rate"],
            created_at=row.get("created_at"),
        )

    def _row_to_transaction(self, row: Dict[str, Any]) -> SettlementTransaction:
        return SettlementTransaction(
            transaction_id=row["transaction_id"],
            user_id=row["user_id"],
            status=TransactionStatus(row["status"]),
            subject_type=SubjectType(row["subject_type"]),
            subject_ref=row["subject_ref"],
            tokens=row.get("tokens"),
            amount=float(row.get("amount") or 0),
            reconciliation_required=bool(row.get("reconciliation_required")),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


__all__ = ["LedgerRepository"]
