"""
요금제 / 토큰 패키지 시드 스크립트
이미 같은 이름이 있으면 값을 갱신합니다.
"""

import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from decimal import Decimal

from tokenapi.database.connection import SessionLocal
from tokenapi.models.plan import Plan, TokenPackage

DEFAULT_PLANS = [
    {
        "name": "Basic",
        "description": "30 days, 100 tokens per day",
        "price": Decimal("999"),
        "duration_days": 30,
        "daily_token_quota": 100,
        "bonus_token_amount": 0,
        "referral_commission": Decimal("100"),
    },
    {
        "name": "Standard",
        "description": "95 days, 100 tokens per day, 500 bonus tokens",
        "price": Decimal("2499"),
        "duration_days": 95,
        "daily_token_quota": 100,
        "bonus_token_amount": 500,
        "referral_commission": Decimal("250"),
    },
    {
        "name": "Premium",
        "description": "190 days, 100 tokens per day, 1000 bonus tokens",
        "price": Decimal("4499"),
        "duration_days": 190,
        "daily_token_quota": 100,
        "bonus_token_amount": 1000,
        "referral_commission": Decimal("450"),
    },
    {
        "name": "Pro",
        "description": "485 days, 100 tokens per day, 12000 bonus tokens",
        "price": Decimal("7999"),
        "duration_days": 485,
        "daily_token_quota": 100,
        "bonus_token_amount": 12000,
        "referral_commission": Decimal("800"),
    },
]

DEFAULT_PACKAGES = [
    {"name": "Emergency Boost", "tokens": 100, "price": Decimal("149"), "category": "emergency", "max_purchase_per_day": 5, "sort_order": 1},
    {"name": "Standard Pack", "tokens": 300, "price": Decimal("399"), "category": "standard", "max_purchase_per_day": 10, "sort_order": 2, "is_popular": True},
    {"name": "Value Pack", "tokens": 700, "price": Decimal("799"), "category": "value", "max_purchase_per_day": 10, "sort_order": 3},
    {"name": "Power Pack", "tokens": 2000, "price": Decimal("1999"), "category": "power", "max_purchase_per_day": 5, "sort_order": 4},
]


def _upsert(db, model, rows):
    for row in rows:
        instance = db.query(model).filter(model.name == row["name"]).first()
        if instance is None:
            db.add(model(**row))
        else:
            for key, value in row.items():
                setattr(instance, key, value)


def seed_catalog():
    db = SessionLocal()
    try:
        _upsert(db, Plan, DEFAULT_PLANS)
        _upsert(db, TokenPackage, DEFAULT_PACKAGES)
        db.commit()
        print(f"✅ 요금제 {len(DEFAULT_PLANS)}개, 토큰 패키지 {len(DEFAULT_PACKAGES)}개 시드 완료")
        for plan in DEFAULT_PLANS:
            print(f"   {plan['name']:<10} ₹{plan['price']} / {plan['duration_days']}일")
    except Exception as e:
        db.rollback()
        print(f"❌ 시드 데이터 생성 실패: {str(e)}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_catalog()
