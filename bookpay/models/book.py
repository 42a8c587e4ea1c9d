from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime


class Book(SQLModel, table=True):
    """Catalogue row owned by the book service; only the columns checkout reads."""

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    author: str

    price: float
    is_ebook: bool = Field(default=True)
    is_active: bool = Field(default=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_purchasable(self) -> bool:
        return self.is_active and self.is_ebook
