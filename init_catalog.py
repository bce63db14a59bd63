import asyncio
import os

from studiopay import config
from studiopay.helpers import now_ts
from studiopay.infra.sql import Database
from studiopay.model.db import Base, Service

# Prices in halalas / cents
SERVICES = [
    {
        "id": "svc-logo",
        "slug": "logo-design",
        "title_en": "Logo Design",
        "title_ar": "تصميم شعار",
        "prices": {"SAR": 10000, "USD": 2700},
        "delivery_links": [{
            "title": "Logo brief form",
            "url": "https://forms.example.com/logo-brief",
            "locale": "en",
            "tags": ["brief"],
        }],
    },
    {
        "id": "svc-social",
        "slug": "social-media-kit",
        "title_en": "Social Media Kit",
        "title_ar": "حزمة التواصل الاجتماعي",
        "prices": {"SAR": 5000, "USD": 1350},
        "delivery_links": [],
        "legacy_links": ["https://drive.example.com/social-kit"],
    },
]


async def create_catalog(db: Database) -> int:
    await db.create_all(Base.metadata)
    created = 0
    async with db.tx() as s:
        for entry in SERVICES:
            if await s.get(Service, entry["id"]) is not None:
                continue
            s.add(Service(
                created_at=now_ts(),
                legacy_links=entry.get("legacy_links", []),
                **{k: v for k, v in entry.items() if k != "legacy_links"},
            ))
            created += 1
    return created


async def main():
    db = Database(os.getenv("DATABASE_URL", config.DATABASE_URL))
    try:
        created = await create_catalog(db)
    finally:
        await db.dispose()
    print(f'✅ catalog ready ({created} services created)')


if __name__ == '__main__':
    asyncio.run(main())
