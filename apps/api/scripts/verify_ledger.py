import asyncio
import sys
import os

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.future import select

from database import async_session_maker, engine
from models.user import User
from services.credit_service import reconcile_user


async def verify_ledger_async() -> int:
    print("🔍 Verifying credit ledger: stored balances vs. transaction sums...")

    async with async_session_maker() as db:
        result = await db.execute(select(User.id).order_by(User.created_at))
        user_ids = [row[0] for row in result.all()]

        drifted = []
        for user_id in user_ids:
            report = await reconcile_user(user_id, db)
            if report["drift"]:
                drifted.append(report)
                print(
                    f"❌ {user_id}: balance={report['balance']} "
                    f"ledger_total={report['ledger_total']} drift={report['drift']}"
                )

    await engine.dispose()

    if drifted:
        print(f"❌ {len(drifted)} of {len(user_ids)} accounts drifted from their ledger.")
        return 1
    print(f"✅ {len(user_ids)} accounts reconciled with no drift.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(verify_ledger_async()))
