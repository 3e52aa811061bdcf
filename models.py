import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_IMAGES = 10


class ProductMetadata(BaseModel):
    """Resolved summary of a product page. Every field is optional."""

    title: str | None = None
    description: str | None = None
    image: str | None = None
    price: str | None = None  # always "$<digits>.<2 digits>" when present
    url: str | None = None  # canonical page URL reported by the page itself
    retailer: str | None = None
    images: list[str] = []

    @field_validator("images")
    @classmethod
    def dedupe_and_cap_images(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(u for u in v if u))[:MAX_IMAGES]

    def merged_with(self, other: "ProductMetadata") -> "ProductMetadata":
        """Return a copy where every field set on ``other`` wins over ours."""
        data = self.model_dump()
        for key, value in other.model_dump().items():
            if value:
                data[key] = value
        return ProductMetadata(**data)


class CacheEntry(BaseModel):
    """One cached resolution, persisted as a flat document.

    ``metadata`` is stored as a JSON-encoded string, not a nested structure.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = Field(default=None, alias="$id")
    url: str
    normalized_url: str = Field(alias="normalizedUrl")
    url_hash: str = Field(alias="urlHash")
    product_id: str | None = Field(default=None, alias="productId")
    metadata: ProductMetadata = ProductMetadata()
    timestamp: int = 0  # epoch milliseconds of the last write
    hit_count: int = Field(default=1, ge=1, alias="hitCount")
    # Mirrored from metadata.image so listings don't need to decode metadata
    image_url: str | None = Field(default=None, alias="imageUrl")
    # Output of the external text-rewrite step, attached after the fact
    friendly_name: str | None = Field(default=None, alias="friendlyName")
    friendly_description: str | None = Field(default=None, alias="friendlyDescription")

    @field_validator("metadata", mode="before")
    @classmethod
    def decode_metadata(cls, v):
        if isinstance(v, (str, bytes)):
            return orjson.loads(v) if v else {}
        return v

    def to_document(self) -> dict:
        """Flatten for storage: camelCase keys, metadata as a JSON string."""
        doc = self.model_dump(by_alias=True, exclude={"id", "metadata"})
        doc["metadata"] = orjson.dumps(self.metadata.model_dump(exclude_none=True)).decode()
        doc["imageUrl"] = self.metadata.image
        return doc

    @classmethod
    def from_document(cls, doc: dict, doc_id: str | None = None) -> "CacheEntry":
        data = dict(doc)
        if doc_id is not None:
            data["$id"] = doc_id
        return cls.model_validate(data)


class CacheInfo(BaseModel):
    """Cache provenance attached to every successful resolution."""

    model_config = ConfigDict(populate_by_name=True)

    hit: bool
    original_url: str | None = Field(default=None, alias="originalUrl")
    similarity: float | None = None
    hit_count: int | None = Field(default=None, alias="hitCount")
    cached_at: int = Field(alias="cachedAt")


class ResolveResponse(BaseModel):
    """Payload returned by the resolve endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    title: str | None = None
    description: str | None = None
    image: str | None = None
    url: str
    price: str | None = None
    retailer: str | None = None
    images: list[str] = []
    cache: CacheInfo = Field(alias="_cache")

    def to_payload(self) -> dict:
        payload = self.model_dump(by_alias=True, exclude={"cache"})
        payload["_cache"] = self.cache.model_dump(by_alias=True, exclude_none=True)
        return payload
