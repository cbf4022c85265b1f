"""ORM Models for the Site Defect Tracker — SQLAlchemy 2.0"""
import uuid
from datetime import datetime, date
from typing import Optional
from sqlalchemy import (
    String, Text, Integer, Float, DateTime, Date,
    ForeignKey, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── CATALOG (read-only from the API) ─────────────────────────────────────────
class Building(Base):
    __tablename__ = "buildings"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    model_urn: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    floors: Mapped[list["Floor"]] = relationship("Floor", back_populates="building")
    projects: Mapped[list["Project"]] = relationship("Project", back_populates="building")


class Floor(Base):
    __tablename__ = "floors"
    __table_args__ = (UniqueConstraint("building_id", "floor_number", name="uq_floor_number"),)
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    building_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("buildings.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    floor_number: Mapped[int] = mapped_column(Integer, nullable=False)
    building: Mapped["Building"] = relationship("Building", back_populates="floors")
    issues: Mapped[list["Issue"]] = relationship("Issue", back_populates="floor")


class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    building_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("buildings.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="ACTIVE")  # PLANNING | ACTIVE | COMPLETED
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    building: Mapped["Building"] = relationship("Building", back_populates="projects")
    issues: Mapped[list["Issue"]] = relationship("Issue", back_populates="project")


# ── ISSUES ────────────────────────────────────────────────────────────────────
class Issue(Base):
    __tablename__ = "issues"
    __table_args__ = (
        # Exactly one location variant is populated
        CheckConstraint(
            "(location_type = 'dbId' AND db_id IS NOT NULL "
            "AND world_position_x IS NULL AND world_position_y IS NULL AND world_position_z IS NULL) "
            "OR (location_type = 'worldPosition' AND db_id IS NULL "
            "AND world_position_x IS NOT NULL AND world_position_y IS NOT NULL AND world_position_z IS NOT NULL)",
            name="ck_issue_location_variant",
        ),
        Index("ix_issues_project_floor", "project_id", "floor_id"),
    )
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("projects.id"), nullable=False)
    floor_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("floors.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    issue_type: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="MEDIUM")
    location_type: Mapped[str] = mapped_column(String(20), nullable=False)
    db_id: Mapped[Optional[int]] = mapped_column(Integer)
    world_position_x: Mapped[Optional[float]] = mapped_column(Float)
    world_position_y: Mapped[Optional[float]] = mapped_column(Float)
    world_position_z: Mapped[Optional[float]] = mapped_column(Float)
    reported_by: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    project: Mapped["Project"] = relationship("Project", back_populates="issues")
    floor: Mapped["Floor"] = relationship("Floor", back_populates="issues")
    photos: Mapped[list["Photo"]] = relationship(
        "Photo", back_populates="issue", cascade="all, delete-orphan"
    )


class Photo(Base):
    __tablename__ = "photos"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    issue_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True
    )
    blob_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    photo_phase: Mapped[str] = mapped_column(String(10), nullable=False)  # BEFORE | AFTER
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    issue: Mapped["Issue"] = relationship("Issue", back_populates="photos")
