"""
Catalog

Read side and photographer-side writes for materials, sizes, engraving
options, general settings and client albums. Lookups return None instead of
raising: an order may reference an item that was deleted later, and pricing
treats a missing item as zero upcharge with an empty name.
"""
import logging
from typing import Dict, List, Optional

from database import Store
from errors import NotFoundError, ValidationError
from schemas import (
    ALBUM_COLLECTION,
    ENGRAVING_COLLECTION,
    GENERAL_SETTINGS_ID,
    MATERIAL_COLLECTION,
    ORDER_COLLECTION,
    SETTINGS_COLLECTION,
    SIZE_COLLECTION,
    ClientAlbum,
    Color,
    Design,
    EngravingOption,
    GeneralSettings,
    Material,
    SavedAddress,
    ShippingAddress,
    Size,
)

logger = logging.getLogger(__name__)


class Catalog:
    def __init__(self, store: Store):
        self.store = store

    # --------------------- lookups ---------------------

    def get_material(self, material_id: Optional[str]) -> Optional[Material]:
        if not material_id:
            return None
        doc = self.store.get(MATERIAL_COLLECTION, material_id)
        return Material(**doc) if doc else None

    def get_size(self, size_id: Optional[str]) -> Optional[Size]:
        if not size_id:
            return None
        doc = self.store.get(SIZE_COLLECTION, size_id)
        return Size(**doc) if doc else None

    def get_engraving_option(self, option_id: Optional[str]) -> Optional[EngravingOption]:
        if not option_id:
            return None
        doc = self.store.get(ENGRAVING_COLLECTION, option_id)
        return EngravingOption(**doc) if doc else None

    @staticmethod
    def get_color(material: Optional[Material], color_id: Optional[str]) -> Optional[Color]:
        if material is None or not color_id:
            return None
        for color in material.colors:
            if color.id == color_id:
                return color
        return None

    def list_materials(self) -> List[Material]:
        return [Material(**d) for d in self.store.find(MATERIAL_COLLECTION, sort=[("name", 1)])]

    def list_sizes(self) -> List[Size]:
        return [Size(**d) for d in self.store.find(SIZE_COLLECTION, sort=[("name", 1)])]

    def list_engraving_options(self) -> List[EngravingOption]:
        return [EngravingOption(**d) for d in self.store.find(ENGRAVING_COLLECTION, sort=[("name", 1)])]

    def get_available_sizes_for_material(self, material_id: Optional[str]) -> List[Size]:
        """All sizes when the material is unknown or unrestricted, else the allowed subset."""
        sizes = self.list_sizes()
        material = self.get_material(material_id)
        if material is None or not material.restricted_sizes:
            return sizes
        allowed = set(material.restricted_sizes)
        return [s for s in sizes if s.id in allowed]

    def is_engraving_allowed(self, material_id: Optional[str]) -> bool:
        material = self.get_material(material_id)
        return bool(material and material.allow_engraving)

    def get_general_settings(self) -> GeneralSettings:
        doc = self.store.get(SETTINGS_COLLECTION, GENERAL_SETTINGS_ID)
        return GeneralSettings(**doc) if doc else GeneralSettings()

    def get_album(self, album_id: Optional[str]) -> Optional[ClientAlbum]:
        if not album_id:
            return None
        doc = self.store.get(ALBUM_COLLECTION, album_id)
        return ClientAlbum(**doc) if doc else None

    @staticmethod
    def get_design(album: Optional[ClientAlbum], index: Optional[int]) -> Optional[Design]:
        if album is None or index is None or index < 0 or index >= len(album.designs):
            return None
        return album.designs[index]

    # --------------------- admin writes ---------------------

    def save_material(self, material: Material) -> Material:
        self.store.replace(MATERIAL_COLLECTION, material.id, material)
        return material

    def delete_material(self, material_id: str) -> bool:
        return self.store.delete(MATERIAL_COLLECTION, material_id)

    def save_size(self, size: Size) -> Size:
        self.store.replace(SIZE_COLLECTION, size.id, size)
        return size

    def delete_size(self, size_id: str) -> bool:
        return self.store.delete(SIZE_COLLECTION, size_id)

    def save_engraving_option(self, option: EngravingOption) -> EngravingOption:
        self.store.replace(ENGRAVING_COLLECTION, option.id, option)
        return option

    def delete_engraving_option(self, option_id: str) -> bool:
        return self.store.delete(ENGRAVING_COLLECTION, option_id)

    def save_general_settings(self, settings: GeneralSettings) -> GeneralSettings:
        self.store.replace(SETTINGS_COLLECTION, GENERAL_SETTINGS_ID, settings)
        return settings

    def create_album(self, album: ClientAlbum) -> ClientAlbum:
        data = album.model_copy(update={"id": None})
        album_id = self.store.create(ALBUM_COLLECTION, data)
        logger.info("Created client album %s (%s)", album_id, album.title)
        return data.model_copy(update={"id": album_id})

    def update_album(self, album_id: str, album: ClientAlbum) -> ClientAlbum:
        """
        Replace an album's details and designs.

        Orders address their design by index, so every index an order already
        uses must still hold the same design (same stable id) afterwards.
        Designs may be edited in place or appended, never moved or removed.
        """
        current = self.get_album(album_id)
        if current is None:
            logger.warning("Album %s not found for update", album_id)
            raise NotFoundError("album", album_id)

        referenced: Dict[int, Optional[str]] = {}
        for doc in self.store.find(ORDER_COLLECTION, {"client_album_id": album_id}):
            referenced.setdefault(doc["design_index"], doc.get("design_id"))

        for index, design_id in referenced.items():
            if index >= len(album.designs):
                raise ValidationError(
                    "Designs that already have orders cannot be removed or reordered."
                )
            if design_id and album.designs[index].id != design_id:
                raise ValidationError(
                    "Designs that already have orders cannot be removed or reordered."
                )

        # Saved addresses belong to the client side and are left as stored.
        self.store.update(ALBUM_COLLECTION, album_id, album.model_dump(exclude={"id", "saved_addresses"}))
        logger.info("Updated client album %s", album_id)
        return self.get_album(album_id)

    # --------------------- saved addresses ---------------------

    def _require_album(self, album_id: str) -> ClientAlbum:
        album = self.get_album(album_id)
        if album is None:
            logger.warning("Client album %s not found", album_id)
            raise NotFoundError("album", album_id, "Album not found.")
        return album

    def list_addresses(self, album_id: str) -> List[SavedAddress]:
        return self._require_album(album_id).saved_addresses

    def save_address(self, album_id: str, address: ShippingAddress) -> SavedAddress:
        self._require_album(album_id)
        saved = SavedAddress(**{k: v.strip() for k, v in address.model_dump(exclude={"id"}).items()})
        if not (saved.name and saved.address1 and saved.city and saved.state and saved.zip):
            raise ValidationError("Please fill in all required address fields.")
        self.store.push(ALBUM_COLLECTION, album_id, "saved_addresses", saved)
        logger.info("Saved address %s on album %s", saved.id, album_id)
        return saved

    def delete_address(self, album_id: str, address_id: str) -> List[SavedAddress]:
        if not address_id:
            raise ValidationError("Invalid request.")
        self._require_album(album_id)
        if self.store.pull(ALBUM_COLLECTION, album_id, "saved_addresses", {"id": address_id}):
            logger.info("Deleted address %s from album %s", address_id, album_id)
        return self.list_addresses(album_id)
