"""
Document store abstraction for products/categories and an in-memory test implementation.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import JSON, Column, Float, String, create_engine, or_, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from storefront_media.media_keys import FieldKind, ReferenceField

# Keeps IN (...) clauses well under driver parameter limits.
_IN_CLAUSE_CHUNK = 500


class DbClient(Protocol):
    """Interface for document access."""

    def get_reference_values(self, ref_field: ReferenceField) -> list[str]:
        """Return media keys held in ``ref_field`` that match its prefixes."""
        ...

    def pull_array_values(self, ref_field: ReferenceField, keys: Iterable[str]) -> int:
        ...

    def clear_singular_values(self, ref_field: ReferenceField, keys: Iterable[str]) -> int:
        ...

    def create_product(self, name: str) -> "ProductRecord":
        ...

    def get_product(self, product_id: str) -> Optional["ProductRecord"]:
        ...

    def update_product_media(
        self,
        product_id: str,
        *,
        thumbnail: Optional[str] = None,
        add_images: Optional[list[str]] = None,
    ) -> Optional["ProductRecord"]:
        ...

    def remove_product_images(
        self, product_id: str, keys: Optional[Iterable[str]] = None
    ) -> Optional["ProductRecord"]:
        """Drop ``keys`` from the product's images, or every image when ``keys`` is None."""
        ...

    def clear_product_thumbnail(self, product_id: str) -> Optional["ProductRecord"]:
        ...

    def create_category(self, name: str, slug: str) -> "CategoryRecord":
        ...

    def get_category(self, category_id: str) -> Optional["CategoryRecord"]:
        ...

    def set_category_thumbnail(
        self, category_id: str, thumbnail: Optional[str]
    ) -> Optional["CategoryRecord"]:
        ...


@dataclass
class ProductRecord:
    product_id: str
    name: str
    thumbnail: Optional[str] = None
    images: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "thumbnail": self.thumbnail,
            "images": list(self.images),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class CategoryRecord:
    category_id: str
    name: str
    slug: str
    thumbnail: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "category_id": self.category_id,
            "name": self.name,
            "slug": self.slug,
            "thumbnail": self.thumbnail,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _chunks(values: list[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class InMemoryDbClient:
    """Simple in-memory document store for development and tests."""

    def __init__(self):
        self.products: Dict[str, ProductRecord] = {}
        self.categories: Dict[str, CategoryRecord] = {}

    def _collection(self, name: str) -> dict:
        return {"products": self.products, "categories": self.categories}[name]

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.products.clear()
        self.categories.clear()

    def get_reference_values(self, ref_field: ReferenceField) -> list[str]:
        values: list[str] = []
        for record in self._collection(ref_field.collection).values():
            value = getattr(record, ref_field.field)
            if ref_field.kind == FieldKind.ARRAY:
                values.extend(v for v in value or [] if ref_field.accepts(v))
            elif ref_field.accepts(value):
                values.append(value)
        return values

    def pull_array_values(self, ref_field: ReferenceField, keys: Iterable[str]) -> int:
        keys = set(keys)
        modified = 0
        for record in self._collection(ref_field.collection).values():
            current = getattr(record, ref_field.field) or []
            kept = [value for value in current if value not in keys]
            if len(kept) != len(current):
                setattr(record, ref_field.field, kept)
                record.updated_at = time.time()
                modified += 1
        return modified

    def clear_singular_values(self, ref_field: ReferenceField, keys: Iterable[str]) -> int:
        keys = set(keys)
        modified = 0
        for record in self._collection(ref_field.collection).values():
            if getattr(record, ref_field.field) in keys:
                setattr(record, ref_field.field, None)
                record.updated_at = time.time()
                modified += 1
        return modified

    def create_product(self, name: str) -> ProductRecord:
        record = ProductRecord(product_id=uuid.uuid4().hex, name=name)
        self.products[record.product_id] = record
        return record

    def get_product(self, product_id: str) -> Optional[ProductRecord]:
        return self.products.get(product_id)

    def update_product_media(
        self,
        product_id: str,
        *,
        thumbnail: Optional[str] = None,
        add_images: Optional[list[str]] = None,
    ) -> Optional[ProductRecord]:
        record = self.products.get(product_id)
        if not record:
            return None
        if thumbnail is not None:
            record.thumbnail = thumbnail
        if add_images:
            record.images = list(record.images) + list(add_images)
        record.updated_at = time.time()
        return record

    def remove_product_images(
        self, product_id: str, keys: Optional[Iterable[str]] = None
    ) -> Optional[ProductRecord]:
        record = self.products.get(product_id)
        if not record:
            return None
        if keys is None:
            record.images = []
        else:
            keys = set(keys)
            record.images = [value for value in record.images if value not in keys]
        record.updated_at = time.time()
        return record

    def clear_product_thumbnail(self, product_id: str) -> Optional[ProductRecord]:
        record = self.products.get(product_id)
        if not record:
            return None
        record.thumbnail = None
        record.updated_at = time.time()
        return record

    def create_category(self, name: str, slug: str) -> CategoryRecord:
        record = CategoryRecord(category_id=uuid.uuid4().hex, name=name, slug=slug)
        self.categories[record.category_id] = record
        return record

    def get_category(self, category_id: str) -> Optional[CategoryRecord]:
        return self.categories.get(category_id)

    def set_category_thumbnail(
        self, category_id: str, thumbnail: Optional[str]
    ) -> Optional[CategoryRecord]:
        record = self.categories.get(category_id)
        if not record:
            return None
        record.thumbnail = thumbnail
        record.updated_at = time.time()
        return record


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _column(self, ref_field: ReferenceField):
        row_cls = _ROW_MODELS[ref_field.collection]
        return row_cls, getattr(row_cls, ref_field.field)

    def _to_product_record(self, row: "ProductRow") -> ProductRecord:
        return ProductRecord(
            product_id=row.product_id,
            name=row.name,
            thumbnail=row.thumbnail,
            images=list(row.images or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_category_record(self, row: "CategoryRow") -> CategoryRecord:
        return CategoryRecord(
            category_id=row.category_id,
            name=row.name,
            slug=row.slug,
            thumbnail=row.thumbnail,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def get_reference_values(self, ref_field: ReferenceField) -> list[str]:
        _, column = self._column(ref_field)
        with self.Session() as session:
            if ref_field.kind == FieldKind.ARRAY:
                stmt = select(column).where(column.is_not(None))
                values = [
                    value
                    for array in session.execute(stmt).scalars()
                    for value in array or []
                ]
            else:
                stmt = select(column).where(
                    or_(*[column.like(f"{prefix}%") for prefix in ref_field.prefixes])
                )
                values = list(session.execute(stmt).scalars())
        # LIKE is case-insensitive on some backends; prefixes are not.
        return [value for value in values if ref_field.accepts(value)]

    def pull_array_values(self, ref_field: ReferenceField, keys: Iterable[str]) -> int:
        keys = set(keys)
        if not keys:
            return 0
        row_cls, column = self._column(ref_field)
        modified = 0
        now = time.time()
        with self.Session() as session:
            stmt = select(row_cls).where(column.is_not(None))
            rows = session.execute(stmt).scalars().all()
            for row in rows:
                current = getattr(row, ref_field.field) or []
                kept = [value for value in current if value not in keys]
                if len(kept) != len(current):
                    # Reassign so the JSON column is flagged dirty.
                    setattr(row, ref_field.field, kept)
                    row.updated_at = now
                    modified += 1
            session.commit()
        return modified

    def clear_singular_values(self, ref_field: ReferenceField, keys: Iterable[str]) -> int:
        keys = sorted(set(keys))
        if not keys:
            return 0
        row_cls, column = self._column(ref_field)
        modified = 0
        with self.Session() as session:
            for chunk in _chunks(keys, _IN_CLAUSE_CHUNK):
                updated = (
                    session.query(row_cls)
                    .filter(column.in_(chunk))
                    .update(
                        {column: None, row_cls.updated_at: time.time()},
                        synchronize_session=False,
                    )
                )
                modified += updated or 0
            session.commit()
        return modified

    def create_product(self, name: str) -> ProductRecord:
        now = time.time()
        with self.Session() as session:
            row = ProductRow(
                product_id=uuid.uuid4().hex,
                name=name,
                thumbnail=None,
                images=[],
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_product_record(row)

    def get_product(self, product_id: str) -> Optional[ProductRecord]:
        with self.Session() as session:
            row = session.get(ProductRow, product_id)
            if not row:
                return None
            return self._to_product_record(row)

    def update_product_media(
        self,
        product_id: str,
        *,
        thumbnail: Optional[str] = None,
        add_images: Optional[list[str]] = None,
    ) -> Optional[ProductRecord]:
        with self.Session() as session:
            row = session.get(ProductRow, product_id)
            if not row:
                return None
            if thumbnail is not None:
                row.thumbnail = thumbnail
            if add_images:
                row.images = list(row.images or []) + list(add_images)
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_product_record(row)

    def remove_product_images(
        self, product_id: str, keys: Optional[Iterable[str]] = None
    ) -> Optional[ProductRecord]:
        with self.Session() as session:
            row = session.get(ProductRow, product_id)
            if not row:
                return None
            if keys is None:
                row.images = []
            else:
                keys = set(keys)
                row.images = [value for value in row.images or [] if value not in keys]
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_product_record(row)

    def clear_product_thumbnail(self, product_id: str) -> Optional[ProductRecord]:
        with self.Session() as session:
            row = session.get(ProductRow, product_id)
            if not row:
                return None
            row.thumbnail = None
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_product_record(row)

    def create_category(self, name: str, slug: str) -> CategoryRecord:
        now = time.time()
        with self.Session() as session:
            row = CategoryRow(
                category_id=uuid.uuid4().hex,
                name=name,
                slug=slug,
                thumbnail=None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_category_record(row)

    def get_category(self, category_id: str) -> Optional[CategoryRecord]:
        with self.Session() as session:
            row = session.get(CategoryRow, category_id)
            if not row:
                return None
            return self._to_category_record(row)

    def set_category_thumbnail(
        self, category_id: str, thumbnail: Optional[str]
    ) -> Optional[CategoryRecord]:
        with self.Session() as session:
            row = session.get(CategoryRow, category_id)
            if not row:
                return None
            row.thumbnail = thumbnail
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_category_record(row)


Base = declarative_base()


class ProductRow(Base):
    __tablename__ = "products"

    product_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    thumbnail = Column(String, nullable=True, index=True)
    images = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class CategoryRow(Base):
    __tablename__ = "categories"

    category_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, index=True)
    thumbnail = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


_ROW_MODELS = {
    "products": ProductRow,
    "categories": CategoryRow,
}
