from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """
    Base class for all ORM models.

    SQLAlchemy uses this to keep track of tables and mappings.
    """
    pass


class Pokemon(Base):
    """
    ORM model for the 'pokemons' table, the root of the aggregate.

    Owns its types (cascade on delete) and its stats. Stats only hold a
    nullable, non-cascading reference back, so they survive the deletion
    of their Pokemon with pokemon_id cleared.
    """
    __tablename__ = "pokemons"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    base_experience: Mapped[int] = mapped_column(Integer, nullable=False)
    image_url: Mapped[str] = mapped_column(Text, nullable=False)

    # Removing a stat from this collection sets its pokemon_id to NULL
    stats: Mapped[list["PokemonStat"]] = relationship(
        back_populates="pokemon",
        order_by="PokemonStat.id",
    )
    types: Mapped[list["PokemonType"]] = relationship(
        back_populates="pokemon",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: (PokemonType.slot, PokemonType.id),
    )


class StatInfo(Base):
    """Reference entity such as 'speed' or 'attack', shared across Pokemon."""
    __tablename__ = "stat_infos"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)


class TypeInfo(Base):
    """Reference entity such as 'fire' or 'water', shared across Pokemon."""
    __tablename__ = "type_infos"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)


class PokemonStat(Base):
    """
    ORM model for the 'pokemon_stats' table.

    Each row is one stat value of one Pokemon. The stat reference is
    required and cascades; the Pokemon reference is optional and has no
    database-level delete action.
    """
    __tablename__ = "pokemon_stats"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    base_stat: Mapped[int] = mapped_column(Integer, nullable=False)
    effort: Mapped[int] = mapped_column(Integer, nullable=False)
    stat_id: Mapped[int] = mapped_column(
        ForeignKey("stat_infos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pokemon_id: Mapped[int | None] = mapped_column(
        ForeignKey("pokemons.id"),
        nullable=True,
        index=True,
    )

    stat: Mapped[StatInfo] = relationship(lazy="raise")
    pokemon: Mapped[Pokemon | None] = relationship(back_populates="stats")


class PokemonType(Base):
    """
    ORM model for the 'pokemon_types' join table.

    Slot orders type application; duplicate slots per Pokemon are allowed.
    """
    __tablename__ = "pokemon_types"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slot: Mapped[int] = mapped_column(Integer, nullable=False)
    pokemon_id: Mapped[int] = mapped_column(
        ForeignKey("pokemons.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type_id: Mapped[int] = mapped_column(
        ForeignKey("type_infos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    type: Mapped[TypeInfo] = relationship(lazy="raise")
    pokemon: Mapped[Pokemon] = relationship(back_populates="types")
