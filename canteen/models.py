import datetime
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from canteen.database import Base


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100))
    email = Column(String(255), unique=True, index=True)
    hashed_password = Column(String(200))

    role = Column(String(20), default="customer")  # customer / admin
    phone = Column(String(20), nullable=True)
    email_confirmed = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)


class Category(Base):
    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), index=True)
    created_at = Column(DateTime, default=utcnow)

    menu_items = relationship("MenuItem", back_populates="category")


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), index=True)
    description = Column(Text, nullable=True)
    price = Column(Float)
    image_url = Column(String(500), nullable=True)

    category_id = Column(String(36), ForeignKey("categories.id"))
    is_vegetarian = Column(Boolean, default=False)
    is_vegan = Column(Boolean, default=False)
    is_gluten_free = Column(Boolean, default=False)
    is_spicy = Column(Boolean, default=False)
    is_available = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    category = relationship("Category", back_populates="menu_items")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), index=True)
    menu_item_id = Column(String(36), ForeignKey("menu_items.id"))
    quantity = Column(Integer, default=1)
    special_instructions = Column(String(500), nullable=True)
    # canonical JSON list, part of the line identity
    customizations = Column(Text, default="[]")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    menu_item = relationship("MenuItem")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), index=True)
    order_number = Column(String(40), index=True)

    status = Column(String(20), default="pending")
    total_amount = Column(Float)
    # snapshot of the cart lines at submission time, JSON text
    order_items = Column(Text)

    payment_method = Column(String(20))
    pickup_time = Column(String(100), nullable=True)
    special_instructions = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    special_orders = relationship("SpecialOrder", back_populates="order", cascade="all, delete-orphan")


class SpecialOrder(Base):
    __tablename__ = "special_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"))
    event_name = Column(String(200))
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="special_orders")


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "menu_item_id", name="uq_favorite_user_item"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), index=True)
    menu_item_id = Column(String(36), ForeignKey("menu_items.id"))
