from __future__ import annotations

import os
import threading
from datetime import date, datetime
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from campuscal.aggregator import EventAggregator
from campuscal.calendar_service import PersonalCalendarService
from campuscal.config_manager import ConfigManager
from campuscal.errors import ConfigError, EventNotFoundError, InvalidUserIdError, require_user_id
from campuscal.ics_parser import IcsImportParser
from campuscal.models import AppConfig, parse_iso_datetime
from campuscal.reconciler import ImportDeduplicator
from campuscal.stores import SqliteAppEventStore, SqlitePersonalEventStore


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ImportRequest(BaseModel):
    ics: str = Field(min_length=1)
    source_tag: str | None = None


class PersonalEventRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    start: str
    end: str | None = None
    location: str | None = None
    color_hint: str | None = None
    description: str | None = None


class AppContext:
    def __init__(self, config_path: str, db_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        resolved_db_path = db_path or config.storage.db_path
        self.personal_store = SqlitePersonalEventStore(resolved_db_path)
        self.app_event_store = SqliteAppEventStore(resolved_db_path)
        self.parser = IcsImportParser()
        self._services: dict[str, PersonalCalendarService] = {}
        self._lock = threading.Lock()

    def _build_service(self, user_id: str, config: AppConfig) -> PersonalCalendarService:
        aggregator = EventAggregator(self.personal_store, self.app_event_store, palette=config.colors)
        return PersonalCalendarService(
            user_id,
            aggregator,
            ImportDeduplicator(self.personal_store),
            self.parser,
            tz=config.calendar.tzinfo,
            default_duration=config.calendar.default_duration,
            import_source_tag=config.calendar.import_source_tag,
            import_log=self.personal_store,
        )

    def service_for(self, user_id: str) -> PersonalCalendarService:
        user_id = require_user_id(user_id)
        with self._lock:
            service = self._services.get(user_id)
            if service is None:
                service = self._build_service(user_id, self.config_manager.load())
                self._services[user_id] = service
            return service

    def reset_services(self) -> None:
        with self._lock:
            self._services.clear()


def _parse_datetime_param(value: str | None, name: str) -> Any:
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} datetime") from exc


def _event_interval(request: PersonalEventRequest) -> tuple[datetime, datetime | None]:
    start_dt = _parse_datetime_param(request.start, "start")
    end_dt = _parse_datetime_param(request.end, "end")
    if start_dt is None:
        raise HTTPException(status_code=400, detail="Invalid start datetime")
    if end_dt is not None and end_dt < start_dt:
        raise HTTPException(status_code=400, detail="end must be later than start")
    return start_dt, end_dt


def create_app() -> FastAPI:
    config_path = os.getenv("CAMPUSCAL_CONFIG_PATH", "config.yaml")
    db_path = os.getenv("CAMPUSCAL_DB_PATH") or None
    context = AppContext(config_path=config_path, db_path=db_path)

    app = FastAPI(title="Campus Calendar", version="0.1.0")
    app.state.context = context

    def _service(user_id: str) -> PersonalCalendarService:
        try:
            return app.state.context.service_for(user_id)
        except InvalidUserIdError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    def _loaded_service(user_id: str) -> PersonalCalendarService:
        service = _service(user_id)
        result = service.load()
        if result.status != "success":
            raise HTTPException(status_code=503, detail=result.message)
        return service

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.reset_services()
        return {
            "message": "config updated",
            "config": updated.to_dict(),
        }

    @app.get("/api/users/{user_id}/calendar")
    def get_calendar(user_id: str) -> dict[str, Any]:
        service = _loaded_service(user_id)
        return {"items": [item.to_dict() for item in service.items]}

    @app.get("/api/users/{user_id}/calendar/dates")
    def get_calendar_dates(user_id: str) -> dict[str, Any]:
        service = _loaded_service(user_id)
        dates = sorted(key.to_date().isoformat() for key in service.dates_with_events())
        return {"dates": dates}

    @app.get("/api/users/{user_id}/calendar/day")
    def get_calendar_day(user_id: str, date: str) -> dict[str, Any]:
        try:
            day = _parse_day(date)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD") from exc
        service = _loaded_service(user_id)
        items = service.select_date(day)
        return {"date": day.isoformat(), "items": [item.to_dict() for item in items]}

    @app.get("/api/users/{user_id}/calendar/conflicts")
    def get_conflicts(user_id: str, start: str, end: str | None = None) -> dict[str, Any]:
        start_dt = _parse_datetime_param(start, "start")
        end_dt = _parse_datetime_param(end, "end")
        if start_dt is None:
            raise HTTPException(status_code=400, detail="Invalid start datetime")
        service = _loaded_service(user_id)
        conflict = service.find_conflict(start_dt, end_dt)
        if conflict is None:
            return {"has_conflict": False, "message": "", "items": []}
        return {
            "has_conflict": True,
            "message": conflict.message,
            "items": [item.to_dict() for item in conflict.conflicting_items],
        }

    @app.post("/api/users/{user_id}/calendar/import")
    def import_calendar(user_id: str, request: ImportRequest) -> dict[str, Any]:
        service = _service(user_id)
        result = service.import_calendar(request.ics, source_tag=request.source_tag)
        if result.status != "success":
            raise HTTPException(status_code=422, detail=result.message)
        return {"message": "import completed", "result": result.to_dict()}

    @app.post("/api/users/{user_id}/calendar/events")
    def add_personal_event(user_id: str, request: PersonalEventRequest) -> dict[str, Any]:
        start_dt, end_dt = _event_interval(request)
        service = _service(user_id)
        record = service.add_event(
            title=request.title,
            start=start_dt,
            end=end_dt,
            location=request.location,
            color_hint=request.color_hint,
            description=request.description,
        )
        return {"message": "event added", "event": record.to_dict()}

    @app.put("/api/users/{user_id}/calendar/events/{event_id}")
    def update_personal_event(user_id: str, event_id: str, request: PersonalEventRequest) -> dict[str, Any]:
        start_dt, end_dt = _event_interval(request)
        service = _service(user_id)
        try:
            record = service.update_event(
                event_id,
                title=request.title,
                start=start_dt,
                end=end_dt,
                location=request.location,
                color_hint=request.color_hint,
                description=request.description,
            )
        except EventNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"message": "event updated", "event": record.to_dict()}

    @app.delete("/api/users/{user_id}/calendar/events/{event_id}")
    def delete_personal_event(user_id: str, event_id: str) -> dict[str, str]:
        service = _service(user_id)
        service.delete_event(event_id)
        return {"message": "event deleted"}

    @app.get("/api/imports")
    def import_runs(limit: int = 20, user_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.personal_store.recent_import_runs(limit=limit, user_id=user_id)}

    return app


def _parse_day(value: str) -> date:
    return date.fromisoformat(value.strip())
