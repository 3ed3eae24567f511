"""
InstanceManager: lifecycle, health and P&L bookkeeping for managed gateways.

The manager is the only writer of instance rows. Per instance it tracks two
orthogonal pieces of state:

    health:   unknown -> healthy <-> unhealthy   (health_check)
    mode:     live <-> analyzer                   (toggle_analyzer_mode)

Propagation policy:
    - health_check never raises; failures become `unhealthy`.
    - refresh_pnl is all-or-nothing and propagates the first remote error.
    - toggle_analyzer_mode raises ValidationError when open positions remain
      after the closure step; the stored mode is then left untouched.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence

from algofleet.core.errors import ConflictError, NotFoundError, RemoteError, ValidationError
from algofleet.core.models import HealthStatus, Instance, MarketDataRole
from algofleet.execution.pnl import (
    AggregatedPnL,
    InstancePnL,
    balance_from_funds,
    build_instance_pnl,
    combine_instance_pnl,
    open_positions,
    realized_from_funds,
    realized_pnl,
    unrealized_pnl,
)
from algofleet.infra.gateway_client import GatewayClient
from algofleet.infra.storage import Storage
from algofleet.utils import normalize_url, parse_bool_safe, parse_float_safe, utc_iso

if TYPE_CHECKING:
    from algofleet.monitoring.metrics_rich import FleetMetrics

log = logging.getLogger("algofleet")

INSTANCES = "instances"


@dataclass
class InstanceManagerConfig:
    """Configuration for InstanceManager."""
    default_target_profit: float = 5000.0
    default_target_loss: float = 2000.0

    # Funds-reported realized P&L vs FIFO estimate
    divergence_abs_tolerance: float = 1.0
    divergence_rel_tolerance: float = 0.01

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class SafeSwitchResult:
    """Outcome of a confirmed analyzer-mode transition."""
    instance: Instance
    analyzer_mode: bool
    closure_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance": self.instance.to_public_dict(),
            "analyzer_mode": self.analyzer_mode,
            "closure_errors": list(self.closure_errors),
        }


class InstanceManager:
    """
    Owns instance rows and every state transition applied to them.

    Usage:
        manager = InstanceManager(gateway, storage, metrics=metrics)
        inst = await manager.register_instance({"name": "alpha", ...})
        await manager.health_check(inst)
        await manager.refresh_pnl(inst)
        await manager.toggle_analyzer_mode(inst.id, True)
    """

    UPDATABLE_FIELDS = (
        "name",
        "endpoint_url",
        "api_key",
        "strategy_tag",
        "active",
        "market_data_role",
        "target_profit",
        "target_loss",
    )

    def __init__(
        self,
        gateway: GatewayClient,
        storage: Storage,
        metrics: Optional["FleetMetrics"] = None,
        config: Optional[InstanceManagerConfig] = None,
    ) -> None:
        self.gateway = gateway
        self.storage = storage
        self.metrics = metrics
        self.config = config or InstanceManagerConfig()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def list_instances(
        self,
        active: Optional[bool] = None,
        analyzer: Optional[bool] = None,
        health: Optional[HealthStatus] = None,
    ) -> List[Instance]:
        rows = await self.storage.list(INSTANCES)
        instances = [Instance.from_row(row) for row in rows]
        if active is not None:
            instances = [i for i in instances if i.active == active]
        if analyzer is not None:
            instances = [i for i in instances if i.analyzer_mode == analyzer]
        if health is not None:
            instances = [i for i in instances if i.health_status is HealthStatus.parse(health)]
        return instances

    async def get_instance(self, instance_id: int) -> Instance:
        row = await self.storage.get(INSTANCES, instance_id)
        if row is None:
            raise NotFoundError("Instance", instance_id)
        return Instance.from_row(row)

    async def register_instance(self, fields: Mapping[str, Any]) -> Instance:
        """
        Create an instance after a successful connectivity check.

        Raises ValidationError for missing/invalid fields or a failed connectivity check,
        ConflictError when the endpoint is already registered.
        """
        normalized = self._normalize_fields(fields, is_update=False)

        if await self._endpoint_taken(normalized["endpoint_url"]):
            raise ConflictError("Instance with this endpoint URL already exists")

        candidate = Instance(
            id=0,
            name=normalized["name"],
            endpoint_url=normalized["endpoint_url"],
            api_key=normalized["api_key"],
        )
        if not await self.gateway.validate_connection(candidate):
            raise ValidationError("Failed to connect to instance. Check endpoint URL and API key.")

        row = {
            "strategy_tag": None,
            "active": True,
            "analyzer_mode": False,
            "market_data_role": MarketDataRole.NONE.value,
            "target_profit": self.config.default_target_profit,
            "target_loss": self.config.default_target_loss,
            "current_balance": 0.0,
            "realized_pnl": 0.0,
            "unrealized_pnl": 0.0,
            "total_pnl": 0.0,
            "health_status": HealthStatus.UNKNOWN.value,
            "last_health_check": None,
            "last_ping_at": None,
            **normalized,
        }
        created = Instance.from_row(await self.storage.insert(INSTANCES, row))
        self._log_event("instance_registered", instance_id=created.id, name=created.name)
        return created

    async def update_instance(self, instance_id: int, fields: Mapping[str, Any]) -> Instance:
        current = await self.get_instance(instance_id)
        normalized = self._normalize_fields(fields, is_update=True)
        if not normalized:
            raise ValidationError("No valid fields to update")

        url = normalized.get("endpoint_url")
        if url and url != current.endpoint_url and await self._endpoint_taken(url, exclude_id=instance_id):
            raise ConflictError("Instance with this endpoint URL already exists")

        row = await self.storage.update(INSTANCES, instance_id, normalized)
        if row is None:
            raise NotFoundError("Instance", instance_id)
        self._log_event("instance_updated", instance_id=instance_id, fields=sorted(normalized))
        return Instance.from_row(row)

    async def delete_instance(self, instance_id: int) -> None:
        """Delete the instance; dependent rows are removed by the storage cascade."""
        if not await self.storage.delete(INSTANCES, instance_id):
            raise NotFoundError("Instance", instance_id)
        self._log_event("instance_deleted", instance_id=instance_id)

    async def get_market_data_instances(self) -> List[Instance]:
        """Active instances carrying a market-data role, primary first."""
        order = {MarketDataRole.PRIMARY: 0, MarketDataRole.SECONDARY: 1}
        candidates = [
            i for i in await self.list_instances(active=True)
            if i.market_data_role in order
        ]
        return sorted(candidates, key=lambda i: (order[i.market_data_role], i.id))

    async def _endpoint_taken(self, url: str, exclude_id: Optional[int] = None) -> bool:
        rows = await self.storage.list(INSTANCES, {"endpoint_url": url})
        return any(int(row["id"]) != exclude_id for row in rows)

    def _normalize_fields(self, fields: Mapping[str, Any], is_update: bool) -> Dict[str, Any]:
        normalized: Dict[str, Any] = {}
        errors: List[Dict[str, str]] = []

        def _required(key: str, value: str, message: str) -> None:
            if value:
                normalized[key] = value
            elif not is_update or key in fields:
                errors.append({"field": key, "message": message})

        if not is_update or "name" in fields:
            _required("name", str(fields.get("name") or "").strip(), "Name is required")
        if not is_update or "endpoint_url" in fields:
            _required("endpoint_url", normalize_url(fields.get("endpoint_url")), "Valid endpoint URL is required")
        if not is_update or "api_key" in fields:
            _required("api_key", str(fields.get("api_key") or "").strip(), "API key is required")

        if "strategy_tag" in fields:
            normalized["strategy_tag"] = str(fields["strategy_tag"] or "").strip() or None
        if "active" in fields:
            normalized["active"] = parse_bool_safe(fields["active"], True)
        if "market_data_role" in fields:
            normalized["market_data_role"] = MarketDataRole.parse(fields["market_data_role"]).value
        if "target_profit" in fields:
            value = parse_float_safe(fields["target_profit"], None)
            normalized["target_profit"] = value if value is not None else self.config.default_target_profit
        if "target_loss" in fields:
            value = parse_float_safe(fields["target_loss"], None)
            normalized["target_loss"] = abs(value) if value is not None else self.config.default_target_loss

        if errors:
            raise ValidationError("Instance validation failed", errors)

        # Anything outside UPDATABLE_FIELDS (analyzer_mode, P&L, health) is ignored
        return {k: v for k, v in normalized.items() if k in self.UPDATABLE_FIELDS}

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self, instance: Instance) -> Instance:
        """
        Ping the gateway and record the outcome. Never raises.

        On success the analyzer flag is refreshed from the remote when it
        reports one; on failure the stored flag is left unchanged.
        """
        status = HealthStatus.UNHEALTHY
        analyzer_mode = instance.analyzer_mode
        fields: Dict[str, Any] = {}

        try:
            await self.gateway.ping(instance)
            status = HealthStatus.HEALTHY
            fields["last_ping_at"] = utc_iso()
        except Exception as exc:
            self._log_event(
                "health_check_failed",
                level=logging.WARNING,
                instance_id=instance.id,
                error=str(exc),
            )

        if status is HealthStatus.HEALTHY:
            try:
                analyzer = await self.gateway.get_analyzer_status(instance)
                if "analyze_mode" in analyzer:
                    analyzer_mode = parse_bool_safe(analyzer.get("analyze_mode"), analyzer_mode)
                elif "mode" in analyzer:
                    analyzer_mode = str(analyzer.get("mode")).lower() in ("analyze", "analyzer")
            except Exception as exc:
                self._log_event(
                    "analyzer_status_failed",
                    level=logging.WARNING,
                    instance_id=instance.id,
                    error=str(exc),
                )

        fields.update({
            "health_status": status.value,
            "analyzer_mode": analyzer_mode,
            "last_health_check": utc_iso(),
        })
        try:
            row = await self.storage.update(INSTANCES, instance.id, fields)
        except Exception as exc:
            self._log_event(
                "health_status_write_failed",
                level=logging.ERROR,
                instance_id=instance.id,
                health_status=status.value,
                error=str(exc),
            )
            row = None

        if self.metrics:
            label = str(instance.id)
            self.metrics.instance_healthy.labels(instance=label).set(1 if status is HealthStatus.HEALTHY else 0)
            self.metrics.analyzer_mode.labels(instance=label).set(1 if analyzer_mode else 0)

        if row is None:
            # Row deleted while the ping was in flight, or the write failed
            return Instance.from_row({**instance.to_row(), **fields})
        return Instance.from_row(row)

    # ------------------------------------------------------------------
    # P&L
    # ------------------------------------------------------------------

    async def refresh_pnl(self, instance: Instance) -> Instance:
        """
        Fetch funds, trades and positions concurrently and persist the P&L
        snapshot. Any failed fetch aborts the refresh and is re-raised.

        The funds endpoint's realized figure is authoritative; the trade
        book only supplies an estimate used when funds carries none, and
        disagreements between the two are logged.
        """
        results = await asyncio.gather(
            self.gateway.get_funds(instance),
            self.gateway.get_trade_book(instance),
            self.gateway.get_position_book(instance),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        funds, trades, positions = results

        estimate = realized_pnl(trades).total
        reported = realized_from_funds(funds)
        if reported is None:
            realized = estimate
        else:
            realized = reported
            self._check_divergence(instance, reported, estimate, has_trades=bool(trades))

        unrealized = unrealized_pnl(positions).total
        balance = balance_from_funds(funds)
        total = realized + unrealized

        fields = {
            "current_balance": balance,
            "realized_pnl": realized,
            "unrealized_pnl": unrealized,
            "total_pnl": total,
        }
        row = await self.storage.update(INSTANCES, instance.id, fields)
        if row is None:
            raise NotFoundError("Instance", instance.id)

        self._log_event(
            "pnl_updated",
            level=logging.DEBUG,
            instance_id=instance.id,
            balance=balance,
            realized=realized,
            unrealized=unrealized,
            total=total,
        )
        if self.metrics:
            label = str(instance.id)
            self.metrics.realized_pnl.labels(instance=label).set(realized)
            self.metrics.unrealized_pnl.labels(instance=label).set(unrealized)
            self.metrics.total_pnl.labels(instance=label).set(total)
            self.metrics.balance.labels(instance=label).set(balance)

        return Instance.from_row(row)

    def _check_divergence(self, instance: Instance, reported: float, estimate: float, has_trades: bool) -> None:
        if not has_trades:
            return
        diff = abs(reported - estimate)
        tolerance = max(
            self.config.divergence_abs_tolerance,
            self.config.divergence_rel_tolerance * max(abs(reported), abs(estimate)),
        )
        if diff <= tolerance:
            return
        self._log_event(
            "realized_pnl_divergence",
            level=logging.WARNING,
            instance_id=instance.id,
            reported=reported,
            fifo_estimate=estimate,
            diff=diff,
        )
        if self.metrics:
            self.metrics.pnl_divergence.labels(instance=str(instance.id)).inc()

    async def get_instance_pnl(self, instance: Instance) -> InstancePnL:
        """
        Per-symbol P&L breakdown for one instance.

        Each book is fetched tolerantly (a failed endpoint degrades to empty);
        only when every fetch fails is the first error raised.
        """
        results = await asyncio.gather(
            self.gateway.get_trade_book(instance),
            self.gateway.get_position_book(instance),
            self.gateway.get_funds(instance),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for err in errors:
            if not isinstance(err, Exception):
                raise err
        if len(errors) == len(results):
            raise errors[0]
        for name, result in zip(("tradebook", "positionbook", "funds"), results):
            if isinstance(result, Exception):
                self._log_event(
                    "pnl_fetch_degraded",
                    level=logging.WARNING,
                    instance_id=instance.id,
                    operation=name,
                    error=str(result),
                )

        trades, positions, funds = (
            (default if isinstance(r, Exception) else r)
            for r, default in zip(results, ([], [], {}))
        )
        return build_instance_pnl(instance, trades, positions, funds)

    async def get_aggregated_pnl(self, instances: Optional[Sequence[Instance]] = None) -> AggregatedPnL:
        """All-settled P&L aggregate; failed instances appear with an error annotation."""
        if instances is None:
            instances = await self.list_instances(active=True)
        instances = list(instances)

        outcomes = await asyncio.gather(
            *(self.get_instance_pnl(i) for i in instances),
            return_exceptions=True,
        )
        for instance, outcome in zip(instances, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self._log_event(
                    "instance_pnl_failed",
                    level=logging.WARNING,
                    instance_id=instance.id,
                    error=str(outcome),
                )
        return combine_instance_pnl(instances, outcomes)

    # ------------------------------------------------------------------
    # Safe-Switch
    # ------------------------------------------------------------------

    async def toggle_analyzer_mode(self, instance_id: int, to_analyzer: bool) -> SafeSwitchResult:
        """
        Switch an instance between live and analyzer mode.

        Entering analyzer mode:
            1. close positions and cancel orders for the strategy tag,
               recording (not raising) any failure
            2. re-fetch the position book
            3. refuse with ValidationError if any non-zero position remains
            4. otherwise toggle on the remote and persist the new mode
        Going live toggles directly.
        """
        instance = await self.get_instance(instance_id)
        direction = "to_analyzer" if to_analyzer else "to_live"
        closure_errors: List[str] = []

        try:
            if to_analyzer:
                self._log_event("safe_switch_started", instance_id=instance.id)
                closure_errors = await self._close_exposure(instance)

                positions = await self.gateway.get_position_book(instance)
                remaining = open_positions(positions)
                if remaining:
                    self._log_event(
                        "safe_switch_refused",
                        level=logging.ERROR,
                        instance_id=instance.id,
                        open_positions=len(remaining),
                        symbols=[p.symbol for p in remaining],
                    )
                    if self.metrics:
                        self.metrics.safe_switch.labels(direction=direction, outcome="refused").inc()
                    raise ValidationError(
                        f"Cannot switch to analyzer mode: {len(remaining)} position(s) still open",
                        errors=[
                            {"field": "positions", "message": f"{p.symbol or '?'} quantity {p.quantity:g}"}
                            for p in remaining
                        ],
                    )
                if closure_errors:
                    self._log_event(
                        "safe_switch_verified_despite_errors",
                        level=logging.WARNING,
                        instance_id=instance.id,
                        errors=closure_errors,
                    )

            await self.gateway.toggle_analyzer(instance, to_analyzer)
        except RemoteError as exc:
            self._log_event(
                "safe_switch_failed",
                level=logging.ERROR,
                instance_id=instance.id,
                direction=direction,
                error=exc.message,
            )
            if self.metrics:
                self.metrics.safe_switch.labels(direction=direction, outcome="failed").inc()
            raise

        row = await self.storage.update(INSTANCES, instance.id, {"analyzer_mode": bool(to_analyzer)})
        if row is None:
            raise NotFoundError("Instance", instance.id)
        updated = Instance.from_row(row)

        self._log_event("analyzer_mode_toggled", instance_id=instance.id, analyzer_mode=bool(to_analyzer))
        if self.metrics:
            self.metrics.safe_switch.labels(direction=direction, outcome="switched").inc()
            self.metrics.analyzer_mode.labels(instance=str(instance.id)).set(1 if to_analyzer else 0)

        return SafeSwitchResult(instance=updated, analyzer_mode=bool(to_analyzer), closure_errors=closure_errors)

    async def _close_exposure(self, instance: Instance) -> List[str]:
        if not instance.strategy_tag:
            self._log_event("safe_switch_no_strategy_tag", level=logging.WARNING, instance_id=instance.id)
            return []

        errors: List[str] = []
        for step, call in (
            ("close_position", self.gateway.close_position),
            ("cancel_all_orders", self.gateway.cancel_all_orders),
        ):
            try:
                await call(instance, instance.strategy_tag)
            except Exception as exc:
                errors.append(f"{step}: {exc}")
                self._log_event(
                    "safe_switch_closure_error",
                    level=logging.WARNING,
                    instance_id=instance.id,
                    step=step,
                    error=str(exc),
                )
        return errors
