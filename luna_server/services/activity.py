# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Account activity log. Best-effort: failures are logged, never raised."""

import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from luna_server.models import Activity

logger = logging.getLogger(__name__)


class ActivityRecorder:
    """Writes Activity rows in a session of its own so a failure cannot touch the caller's transaction."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_maker is None:
            from luna_server.database import async_session_maker

            session_maker = async_session_maker
        self.session_maker = session_maker

    async def record(self, user_id: int, activity_type: str, **metadata) -> None:
        try:
            async with self.session_maker() as session:
                session.add(
                    Activity(
                        user_id=user_id,
                        activity_type=activity_type,
                        metadata_json=json.dumps(metadata) if metadata else None,
                    )
                )
                await session.commit()
            logger.debug("Activity logged: %s by user %s", activity_type, user_id)
        except Exception as e:
            logger.error("Failed to log activity %s for user %s: %s", activity_type, user_id, e)
