"""Demo fixtures: an admin, one store with its owner, a catalogue and a customer."""
import logging
from datetime import datetime, timedelta

from . import schemas
from .auth import get_password_hash
from .models import Role, SubscriptionStatus
from .storage import IStorage

logger = logging.getLogger(__name__)

ADMIN_USERNAME = "admin"

CATEGORIES = ["Skin care", "Hair care", "Perfumes", "Body care"]

# (name, price, description, category index)
PRODUCTS = [
    ("Facial Moisturizer", 89.9, "Deep hydration for every skin type. Non-greasy formula with vitamin E.", 0),
    ("Antioxidant Face Serum", 129.9, "Vitamin C serum that fights free radicals and signs of ageing.", 0),
    ("Repair Hair Mask", 75.9, "Intensive treatment for damaged hair. Restores softness and shine.", 1),
    ("Sunscreen SPF 50", 69.9, "Broad spectrum UVA/UVB protection. Light and water resistant.", 0),
    ("Floral Perfume", 159.9, "Jasmine, rose and vanilla notes. Long lasting.", 2),
    ("Relaxing Body Oil", 85.9, "Lavender and chamomile body oil, ideal for massages.", 3),
]


async def seed_demo_data(storage: IStorage) -> bool:
    """Populate an empty store. Returns False when the admin user already exists."""
    if await storage.get_user_by_username(ADMIN_USERNAME) is not None:
        return False

    await storage.create_user(schemas.UserCreate(
        username=ADMIN_USERNAME, email="admin@moments.com", name="Administrator",
        hashed_password=get_password_hash("admin123"), role=Role.ADMIN,
    ))

    store = await storage.create_store(schemas.StoreCreate(
        name="Moments Paris", slug="moments", logo_url="/placeholder-logo.jpg", whatsapp_number="11987654321",
    ))
    owner_user = await storage.create_user(schemas.UserCreate(
        username="lojista", email="lojista@moments.com", name="Demo Shop Owner",
        hashed_password=get_password_hash("lojista123"), role=Role.SHOPOWNER,
    ))
    await storage.create_shop_owner(schemas.ShopOwnerCreate(
        user_id=owner_user.id, store_id=store.id, subscription_status=SubscriptionStatus.TRIAL,
        subscription_expires_at=datetime.utcnow() + timedelta(days=30),
    ))

    categories = [
        await storage.create_category(schemas.CategoryCreate(name=name, store_id=store.id))
        for name in CATEGORIES
    ]
    for i, (name, price, description, category) in enumerate(PRODUCTS, start=1):
        await storage.create_product(schemas.ProductCreate(
            name=name, price=price, description=description, image_url=f"/placeholder-product-{i}.jpg",
            store_id=store.id, category_id=categories[category].id,
        ))

    customer_user = await storage.create_user(schemas.UserCreate(
        username="cliente", email="cliente@email.com", name="Demo Customer",
        hashed_password=get_password_hash("cliente123"), role=Role.CUSTOMER,
    ))
    await storage.create_customer(schemas.CustomerCreate(
        user_id=customer_user.id, address="Rua das Flores, 123, Sao Paulo - SP", phone="11998765432",
    ))
    logger.info("demo data seeded: store %r with %d products", store.slug, len(PRODUCTS))
    return True
