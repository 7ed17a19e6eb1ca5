import asyncio
import logging
from typing import Dict, Any, Optional, List
from datetime import datetime, timedelta
from config.settings import settings

logger = logging.getLogger(__name__)

class CallRegistry:
    """
    Server-side bookkeeping of live calls: which roles hold a signaling
    connection for which session. Ended calls are kept for a while for
    monitoring and swept by a background task.
    """

    def __init__(self):
        self._calls: Dict[str, Dict[str, Any]] = {}
        self._call_locks: Dict[str, asyncio.Lock] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stats = {
            "total_calls": 0,
            "active_calls": 0,
            "peak_concurrent": 0,
            "cleanup_runs": 0
        }

    async def start_registry(self):
        """Start the registry with background cleanup"""
        logger.info("🚀 Starting call registry...")
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"📊 Max concurrent calls: {settings.max_concurrent_calls}")

    async def stop_registry(self):
        """Stop the registry and cleanup"""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        logger.info("🛑 Call registry stopped")

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._call_locks:
            self._call_locks[session_id] = asyncio.Lock()
        return self._call_locks[session_id]

    async def connect(self, session_id: str, role: str) -> Dict[str, Any]:
        """
        Register a participant's signaling connection

        Raises:
            RuntimeError: If max concurrent calls exceeded by a new call
        """
        async with self._lock_for(session_id):
            call = self._calls.get(session_id)
            if call is None or not call["is_active"]:
                if self.get_active_call_count() >= settings.max_concurrent_calls:
                    raise RuntimeError(f"Maximum concurrent calls ({settings.max_concurrent_calls}) exceeded")
                call = {
                    "session_id": session_id,
                    "participants": [],
                    "started_at": datetime.now().isoformat(),
                    "is_active": True
                }
                self._calls[session_id] = call
                self._stats["total_calls"] += 1

            if role not in call["participants"]:
                call["participants"].append(role)
            call["last_activity"] = datetime.now().isoformat()
            self._refresh_counts()

        logger.info(f"📞 {role} connected to call {session_id} (Active calls: {self._stats['active_calls']})")
        return call.copy()

    async def disconnect(self, session_id: str, role: str) -> None:
        """Remove a participant; the call goes inactive when nobody is left"""
        if session_id not in self._calls:
            return
        async with self._lock_for(session_id):
            call = self._calls.get(session_id)
            if call is None:
                return
            if role in call["participants"]:
                call["participants"].remove(role)
            call["last_activity"] = datetime.now().isoformat()
            if not call["participants"]:
                call["is_active"] = False
            self._refresh_counts()
        logger.info(f"🔌 {role} left call {session_id}")

    async def get_call(self, session_id: str) -> Optional[Dict[str, Any]]:
        call = self._calls.get(session_id)
        return dict(call, participants=list(call["participants"])) if call else None

    async def get_active_calls(self) -> List[Dict[str, Any]]:
        return [dict(c, participants=list(c["participants"])) for c in self._calls.values() if c["is_active"]]

    def get_active_call_count(self) -> int:
        return len([c for c in self._calls.values() if c["is_active"]])

    def _refresh_counts(self) -> None:
        self._stats["active_calls"] = self.get_active_call_count()
        self._stats["peak_concurrent"] = max(self._stats["peak_concurrent"], self._stats["active_calls"])

    async def get_stats(self) -> Dict[str, Any]:
        """Get call registry statistics"""
        return {
            **self._stats,
            "active_calls": self.get_active_call_count(),
            "total_calls_stored": len(self._calls)
        }

    async def _cleanup_loop(self):
        """Background cleanup task"""
        while True:
            try:
                await asyncio.sleep(settings.call_registry_cleanup_interval)
                await self.cleanup_inactive_calls()
                self._stats["cleanup_runs"] += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Cleanup error: {e}")

    async def cleanup_inactive_calls(self, now: Optional[datetime] = None) -> int:
        """Remove ended calls older than the retention window"""
        cutoff_time = (now or datetime.now()) - timedelta(minutes=settings.call_registry_retention_minutes)
        calls_to_remove = [
            session_id for session_id, call in self._calls.items()
            if not call["is_active"] and datetime.fromisoformat(call["last_activity"]) < cutoff_time
        ]

        for session_id in calls_to_remove:
            async with self._lock_for(session_id):
                self._calls.pop(session_id, None)
            self._call_locks.pop(session_id, None)

        if calls_to_remove:
            logger.info(f"🧹 Cleaned up {len(calls_to_remove)} ended calls")
        return len(calls_to_remove)

# Global call registry instance
call_registry = CallRegistry()

async def get_call_registry() -> CallRegistry:
    """Get call registry instance"""
    return call_registry
