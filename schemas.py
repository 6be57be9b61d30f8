"""Request payload models.

Handlers parse JSON bodies and query strings through :func:`parse`, which
turns pydantic's errors into a field-level :class:`errors.ValidationError`.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar, List, Literal, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from errors import ValidationError

EMAIL_PATTERN = r'^[^@\s]+@[^@\s]+\.[^@\s]+$'


def _naive_utc(value):
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Payload(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)


class RegisterRequest(Payload):
    full_name: str = Field(min_length=1, max_length=100)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=120)
    password: str = Field(min_length=6, max_length=128)

    @field_validator('email')
    @classmethod
    def lower_email(cls, v):
        return v.lower()


class LoginRequest(Payload):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class StaffCreateRequest(RegisterRequest):
    position: str = Field(default='New Staff', min_length=1, max_length=60)


class BookFields(Payload):
    @field_validator('publication_date', 'discount_start', 'discount_end', check_fields=False)
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)

    @model_validator(mode='after')
    def check_discount_window(self):
        start = getattr(self, 'discount_start', None)
        end = getattr(self, 'discount_end', None)
        if start is not None and end is not None and end < start:
            raise ValueError('discount_end must not be before discount_start')
        return self


class BookCreateRequest(BookFields):
    title: str = Field(min_length=1, max_length=200)
    isbn: str = Field(min_length=1, max_length=20)
    description: str = ''
    author: str = Field(default='', max_length=120)
    genre: str = Field(default='', max_length=60)
    language: str = Field(default='', max_length=40)
    format: str = Field(default='', max_length=40)
    publisher: str = Field(default='', max_length=120)
    price: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    publication_date: datetime
    page_count: int = Field(default=0, ge=0)
    stock_quantity: int = Field(default=0, ge=0)
    is_available_in_library: bool = True
    discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_start: Optional[datetime] = None
    discount_end: Optional[datetime] = None
    is_award_winner: bool = False
    is_bestseller: bool = False


class BookUpdateRequest(BookFields):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(default=None, min_length=1, max_length=20)
    description: Optional[str] = None
    author: Optional[str] = Field(default=None, max_length=120)
    genre: Optional[str] = Field(default=None, max_length=60)
    language: Optional[str] = Field(default=None, max_length=40)
    format: Optional[str] = Field(default=None, max_length=40)
    publisher: Optional[str] = Field(default=None, max_length=120)
    price: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    publication_date: Optional[datetime] = None
    page_count: Optional[int] = Field(default=None, ge=0)
    stock_quantity: Optional[int] = Field(default=None, ge=0)
    is_available_in_library: Optional[bool] = None
    discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_start: Optional[datetime] = None
    discount_end: Optional[datetime] = None
    is_award_winner: Optional[bool] = None
    is_bestseller: Optional[bool] = None


class CartItemRequest(Payload):
    book_id: int
    quantity: int = Field(ge=0)


class ReviewCreateRequest(Payload):
    book_id: int
    rating: int = Field(ge=1, le=5)
    comment: str = Field(default='', max_length=1000)


class ReviewUpdateRequest(Payload):
    rating: int = Field(ge=1, le=5)
    comment: str = Field(default='', max_length=1000)


class BookmarkRequest(Payload):
    book_id: int


class ClaimCodeRequest(Payload):
    claim_code: str = Field(min_length=1, max_length=32)


class AnnouncementRequest(Payload):
    title: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=500)
    start_time: datetime
    end_time: datetime
    type: Optional[str] = Field(default=None, max_length=50)

    @field_validator('start_time', 'end_time')
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)

    @model_validator(mode='after')
    def check_window(self):
        if self.end_time < self.start_time:
            raise ValueError('end_time must not be before start_time')
        return self


class CatalogQuery(Payload):
    search: Optional[str] = None
    genres: List[str] = []
    authors: List[str] = []
    languages: List[str] = []
    formats: List[str] = []
    publishers: List[str] = []
    on_sale: Optional[bool] = None
    min_price: Optional[Decimal] = Field(default=None, ge=0)
    max_price: Optional[Decimal] = Field(default=None, ge=0)
    min_rating: Optional[float] = Field(default=None, ge=0, le=5)
    max_rating: Optional[float] = Field(default=None, ge=0, le=5)
    is_available_in_library: Optional[bool] = None
    in_stock: Optional[bool] = None
    is_award_winner: Optional[bool] = None
    is_bestseller: Optional[bool] = None
    new_releases: Optional[bool] = None
    new_arrivals: Optional[bool] = None
    coming_soon: Optional[bool] = None
    deals: Optional[bool] = None
    sort_by: Literal['title', 'date', 'price', 'popularity'] = 'title'
    sort_descending: bool = False
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1, le=100)

    LIST_FIELDS: ClassVar[tuple] = ('genres', 'authors', 'languages', 'formats', 'publishers')

    @classmethod
    def from_args(cls, args):
        """Build from a query-string MultiDict; ``genres`` and ``genres[]`` both work."""
        data = {}
        for key in cls.model_fields:
            if key in cls.LIST_FIELDS:
                values = [v for v in args.getlist(key) + args.getlist(f'{key}[]') if v]
                if values:
                    data[key] = values
            else:
                value = args.get(key)
                if value not in (None, ''):
                    data[key] = value
        return parse(cls, data)


def parse(model, data):
    try:
        return model.model_validate(data if data is not None else {})
    except pydantic.ValidationError as exc:
        details = [
            {'field': '.'.join(str(part) for part in err['loc']) or '__root__', 'message': err['msg']}
            for err in exc.errors()
        ]
        raise ValidationError('Invalid request data', details=details)
