"""
Database Schemas for the Catalog API

Each Pydantic model validates the payload of one MongoDB collection.
Collection names are declared in the registry:
- User -> "users"
- Role -> "roles"
- Post -> "posts"
- Product -> "products"
- Subcategory -> "subcategories"
- Category -> "categories"

Relation fields hold the related _id (string on input, ObjectId once stored).
They accept either a bare id or an object like {"_id": "..."}.
`status` and `_id` are managed by the lifecycle manager and are not part of
any model.
"""

from typing import Annotated, Any, List, Optional

from bson import ObjectId
from pydantic import BaseModel, BeforeValidator, EmailStr, Field


def _ref_id(value: Any) -> Any:
    if isinstance(value, dict):
        value = value.get("_id")
    if isinstance(value, ObjectId):
        return str(value)
    return value


Ref = Annotated[Optional[str], BeforeValidator(_ref_id)]


class Role(BaseModel):
    name: str = Field(..., min_length=1, description="Role name")


class User(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    password: Optional[str] = Field(None, description="Plain password, stored hashed")
    birthday: Optional[str] = Field(None, description="Birthday, YYYY-MM-DD")
    gender: Optional[str] = None
    login_type: str = Field("basic", description="Login provider")
    phone: Optional[str] = None
    mobile: Optional[str] = None
    role: Ref = Field(None, description="Role _id")


class CoverImage(BaseModel):
    filename: Optional[str] = None
    publicUrl: Optional[str] = None


class Tag(BaseModel):
    tag: str


class Post(BaseModel):
    title: str = Field(..., min_length=1, description="Post title")
    brief: str = Field(..., description="Short summary")
    body: str = Field(..., description="Full content")
    coverImage: CoverImage = Field(default_factory=CoverImage)
    tags: List[Tag] = []
    author: Ref = Field(None, description="Author user _id")


class Image(BaseModel):
    filename: Optional[str] = None
    publicUrl: Optional[str] = None
    priority: Optional[int] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, description="Unit price")
    code: Optional[str] = None
    sku: Optional[str] = None
    images: List[Image] = []
    subcategory: Ref = Field(None, description="Subcategory _id")


class Subcategory(BaseModel):
    name: str = Field(..., min_length=1, description="Subcategory name")
    category: Ref = Field(None, description="Category _id")


class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Category name")
