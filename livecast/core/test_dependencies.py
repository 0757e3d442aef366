"""
Auth helpers: bearer token -> user, role checks, display names.
"""
import asyncio
import unittest
from unittest.mock import patch

from livecast.core.dependencies import can_broadcast, display_name, resolve_user
from livecast.core.exceptions import AuthError
from livecast.models.orm.user import UserProfile
from livecast.testing.fakes import create_test_database
from livecast.utils.jwt import create_access_token


class TestResolveUser(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine, self.session_factory = await create_test_database()
        self.db = self.session_factory()
        self.db.add(UserProfile(id="b1", email="ada@example.com", full_name="Ada", user_type="instructor"))
        await self.db.commit()

    async def asyncTearDown(self):
        await self.db.close()
        await self.engine.dispose()

    async def test_valid_token(self):
        user = await resolve_user(self.db, create_access_token("b1"))
        self.assertEqual(user["id"], "b1")
        self.assertEqual(user["user_type"], "instructor")

    async def test_unknown_user(self):
        with self.assertRaises(AuthError):
            await resolve_user(self.db, create_access_token("ghost"))

    async def test_garbage_token(self):
        with self.assertRaises(AuthError):
            await resolve_user(self.db, "not-a-jwt")

    async def test_slow_profile_lookup_is_bounded(self):
        async def hanging_lookup(db, user_id):
            await asyncio.sleep(5)

        with patch("livecast.core.dependencies.get_user_by_id", hanging_lookup):
            with self.assertLogs("livecast.core.dependencies", level="WARNING"):
                with self.assertRaises(AuthError) as ctx:
                    await asyncio.wait_for(
                        resolve_user(self.db, create_access_token("b1"), timeout=0.05),
                        timeout=1,
                    )
        self.assertIn("timed out", ctx.exception.message)


class TestRoles(unittest.TestCase):

    def test_can_broadcast(self):
        self.assertTrue(can_broadcast({"user_type": "instructor"}))
        self.assertTrue(can_broadcast({"user_type": "admin"}))
        self.assertFalse(can_broadcast({"user_type": "student"}))
        self.assertFalse(can_broadcast(None))

    def test_display_name(self):
        self.assertEqual(display_name({"full_name": "Ada", "email": "a@x.io"}), "Ada")
        self.assertEqual(display_name({"full_name": None, "email": "grace@x.io"}), "grace")
        self.assertIsNone(display_name(None))


if __name__ == "__main__":
    unittest.main()
