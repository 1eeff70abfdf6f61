import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from canteen import config, models
from canteen.database import get_db, init_db
from canteen.errors import StoreError
from canteen.security import get_current_user, require_admin
from canteen.storage import ObjectStorage, image_object_path

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = "Please fill in all required fields"


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.setup_logging()
    init_db()
    yield


app = FastAPI(title="Canteen Restaurant Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# uploaded images
os.makedirs(config.STORAGE_DIR, exist_ok=True)
app.mount("/static", StaticFiles(directory=config.STORAGE_DIR), name="static")
storage = ObjectStorage()


# --- MODELS ---
class CategoryCreate(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Category name is required")
        return v.strip()


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str


class MenuItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    price: float
    image_url: Optional[str] = None
    category_id: Optional[str] = None
    is_vegetarian: bool = False
    is_vegan: bool = False
    is_gluten_free: bool = False
    is_spicy: bool = False
    is_available: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FavoriteCreate(BaseModel):
    menu_item_id: str


def _get_item(db: Session, item_id: str) -> models.MenuItem:
    item = db.query(models.MenuItem).filter(models.MenuItem.id == item_id).first()
    if not item:
        raise HTTPException(404, "Menu item not found")
    return item


def _check_required(name: Optional[str], price: Optional[float], category_id: Optional[str], db: Session):
    if not name or not name.strip() or price is None or not category_id:
        raise HTTPException(400, REQUIRED_FIELDS)
    if price < 0:
        raise HTTPException(400, "Price must not be negative")
    if not db.query(models.Category).filter(models.Category.id == category_id).first():
        raise HTTPException(400, "Unknown category")


async def _store_image(image: Optional[UploadFile]) -> Optional[str]:
    if image is None or not image.filename:
        return None
    path = image_object_path(image.filename)
    try:
        await storage.upload(path, await image.read())
    except StoreError as e:
        logger.error("Image upload failed: %s", e)
        raise HTTPException(500, "Image upload failed")
    return storage.get_public_url(path)


async def _discard_image(url: Optional[str]) -> None:
    path = storage.object_path(url)
    if path is None or url == config.DEFAULT_IMAGE_URL:
        return
    try:
        await storage.remove(path)
    except StoreError as e:
        logger.warning("Could not remove image %s: %s", path, e)


# ==========================================
# CATEGORIES
# ==========================================
@app.get("/categories", response_model=List[CategoryResponse])
def get_categories(db: Session = Depends(get_db)):
    return db.query(models.Category).order_by(models.Category.name).all()


@app.post("/categories", response_model=CategoryResponse)
def create_category(category: CategoryCreate, user: dict = Depends(require_admin), db: Session = Depends(get_db)):
    new_category = models.Category(name=category.name)
    db.add(new_category)
    db.commit()
    db.refresh(new_category)
    logger.info("Category %s created by %s", new_category.name, user.get("id"))
    return new_category


# ==========================================
# MENU ITEMS
# ==========================================
@app.get("/menu-items", response_model=List[MenuItemResponse])
def get_menu_items(
    category_id: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    available_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    query = db.query(models.MenuItem)
    if category_id and category_id != "all":
        query = query.filter(models.MenuItem.category_id == category_id)
    if q and q.strip():
        pattern = f"%{q.strip()}%"
        query = query.filter(or_(models.MenuItem.name.ilike(pattern), models.MenuItem.description.ilike(pattern)))
    if available_only:
        query = query.filter(models.MenuItem.is_available == True)  # noqa: E712
    return query.order_by(models.MenuItem.name).all()


@app.get("/menu-items/{item_id}", response_model=MenuItemResponse)
def get_menu_item(item_id: str, db: Session = Depends(get_db)):
    return _get_item(db, item_id)


@app.post("/menu-items", response_model=MenuItemResponse)
async def create_menu_item(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    category_id: Optional[str] = Form(None),
    is_vegetarian: bool = Form(False),
    is_vegan: bool = Form(False),
    is_gluten_free: bool = Form(False),
    is_spicy: bool = Form(False),
    is_available: bool = Form(True),
    image_url: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    _check_required(name, price, category_id, db)
    uploaded = await _store_image(image)

    new_item = models.MenuItem(
        name=name.strip(),
        description=description,
        price=price,
        category_id=category_id,
        is_vegetarian=is_vegetarian,
        is_vegan=is_vegan,
        is_gluten_free=is_gluten_free,
        is_spicy=is_spicy,
        is_available=is_available,
        image_url=uploaded or image_url or config.DEFAULT_IMAGE_URL,
    )
    db.add(new_item)
    db.commit()
    db.refresh(new_item)
    logger.info("Menu item %s created by %s", new_item.id, user.get("id"))
    return new_item


@app.put("/menu-items/{item_id}", response_model=MenuItemResponse)
async def update_menu_item(
    item_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    category_id: Optional[str] = Form(None),
    is_vegetarian: bool = Form(False),
    is_vegan: bool = Form(False),
    is_gluten_free: bool = Form(False),
    is_spicy: bool = Form(False),
    is_available: bool = Form(True),
    image_url: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    item = _get_item(db, item_id)
    _check_required(name, price, category_id, db)
    uploaded = await _store_image(image)
    previous_image = item.image_url

    item.name = name.strip()
    item.description = description
    item.price = price
    item.category_id = category_id
    item.is_vegetarian = is_vegetarian
    item.is_vegan = is_vegan
    item.is_gluten_free = is_gluten_free
    item.is_spicy = is_spicy
    item.is_available = is_available
    item.image_url = uploaded or image_url or item.image_url or config.DEFAULT_IMAGE_URL
    db.commit()
    db.refresh(item)
    logger.info("Menu item %s updated by %s", item.id, user.get("id"))
    if uploaded and previous_image != uploaded:
        await _discard_image(previous_image)
    return item


@app.delete("/menu-items/{item_id}")
async def delete_menu_item(item_id: str, user: dict = Depends(require_admin), db: Session = Depends(get_db)):
    item = _get_item(db, item_id)
    # cart lines and favorites point at the item
    db.query(models.CartItem).filter(models.CartItem.menu_item_id == item_id).delete(synchronize_session=False)
    db.query(models.Favorite).filter(models.Favorite.menu_item_id == item_id).delete(synchronize_session=False)
    image_url = item.image_url
    db.delete(item)
    db.commit()
    logger.info("Menu item %s deleted by %s", item_id, user.get("id"))
    await _discard_image(image_url)
    return {"message": "Deleted"}


# ==========================================
# FAVORITES
# ==========================================
@app.get("/favorites", response_model=List[MenuItemResponse])
def get_favorites(user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
    return (
        db.query(models.MenuItem)
        .join(models.Favorite, models.Favorite.menu_item_id == models.MenuItem.id)
        .filter(models.Favorite.user_id == user["id"])
        .order_by(models.Favorite.id)
        .all()
    )


@app.post("/favorites")
def add_favorite(fav: FavoriteCreate, user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
    _get_item(db, fav.menu_item_id)
    db.add(models.Favorite(user_id=user["id"], menu_item_id=fav.menu_item_id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return {"message": "Already a favorite"}
    return {"message": "Added"}


@app.delete("/favorites/{menu_item_id}")
def remove_favorite(menu_item_id: str, user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
    deleted = db.query(models.Favorite).filter(
        models.Favorite.user_id == user["id"],
        models.Favorite.menu_item_id == menu_item_id,
    ).delete(synchronize_session=False)
    db.commit()
    if not deleted:
        raise HTTPException(404, "Favorite not found")
    return {"message": "Removed"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8002)
