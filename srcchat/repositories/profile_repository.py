from typing import Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from srcchat.models.profile import ProfileDocument


class ProfileRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("profiles")

    async def get_profile(self, user_id: str) -> Optional[ProfileDocument]:

        profile = await self._collection.find_one({"_id": user_id})
        if profile:
            profile["id"] = str(profile.pop("_id"))  # normalize for API layer
        return profile

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ProfileDocument]:

        ids = list(set(user_ids))
        if not ids:
            return {}
        cur = self._collection.find({"_id": {"$in": ids}})
        items = await cur.to_list(length=len(ids))
        out: Dict[str, ProfileDocument] = {}
        for it in items:
            it["id"] = str(it.pop("_id"))
            out[it["id"]] = it
        return out

    async def list_by_role(self, role: str, department: Optional[str] = None) -> List[ProfileDocument]:

        query: Dict[str, str] = {"role": role}
        if department:
            key = "src_department" if role == "src" else "department"
            query[key] = department
        cur = self._collection.find(query).sort("full_name", 1)
        items = await cur.to_list(length=None)
        for it in items:
            it["id"] = str(it.pop("_id"))
        return items
