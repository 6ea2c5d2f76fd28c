import logging
from collections.abc import Iterable, Sequence
from typing import NamedTuple

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config import settings
from errors import NotFoundError
from models import Ingredient, Rating, Recipe, RecipeIngredient, User, favorites
from transactions import IsolationLevel, run_in_transaction, store_errors
from user_context import UserContext

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class IngredientLine(NamedTuple):
    ingredient_id: int
    quantity: int
    unit: str


# users


async def create_user(session: AsyncSession, username: str, password: str) -> User:
    async def work(session: AsyncSession) -> User:
        user = User(username=username, password=password)
        session.add(user)
        await session.flush()
        return user

    user = await run_in_transaction(session, work, action="create user")
    logger.info("Created user %s", user.id)
    return user


async def list_users(session: AsyncSession) -> list[User]:
    async with store_errors("load users"):
        res = await session.execute(select(User).order_by(User.id.desc()))
        return list(res.scalars().all())


async def get_user(session: AsyncSession, user_id: int) -> User:
    async with store_errors("load user"):
        user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} does not exist")
    return user


async def delete_user(
    session: AsyncSession, user_id: int, context: UserContext | None = None
) -> tuple[User, bool]:
    """Delete a user with their ratings and favorites.

    Returns the deleted user and whether it was the context's active user,
    in which case the context no longer points at it.
    """

    async def work(session: AsyncSession) -> User:
        user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError("Failed to delete user")
        await session.execute(delete(Rating).where(Rating.user_id == user_id))
        await session.execute(delete(favorites).where(favorites.c.user_id == user_id))
        await session.execute(delete(User).where(User.id == user_id))
        return user

    user = await run_in_transaction(session, work, action="delete user")
    cleared = context is not None and context.clear_if(user_id)
    logger.info("Deleted user %s", user_id)
    return user, cleared


# recipes


async def _load_recipe(session: AsyncSession, recipe_id: int) -> Recipe:
    stmt = (
        select(Recipe)
        .where(Recipe.id == recipe_id)
        .execution_options(populate_existing=True)
    )
    res = await session.execute(stmt)
    return res.scalar_one()


def _ingredient_rows(lines: Iterable[IngredientLine]) -> list[RecipeIngredient]:
    return [
        RecipeIngredient(
            ingredient_id=line.ingredient_id,
            quantity=line.quantity,
            unit=line.unit,
        )
        for line in lines
    ]


async def create_recipe(
    session: AsyncSession,
    name: str,
    description: str | None,
    prep_time: int,
    cuisine_type: str | None,
    ingredients: Iterable[IngredientLine],
) -> Recipe:
    async def work(session: AsyncSession) -> Recipe:
        recipe = Recipe(
            name=name,
            description=description,
            prep_time=prep_time,
            cuisine_type=cuisine_type,
        )
        recipe.recipe_ingredients.extend(_ingredient_rows(ingredients))
        session.add(recipe)
        await session.flush()
        return await _load_recipe(session, recipe.id)

    recipe = await run_in_transaction(session, work, action="create recipe")
    logger.info(
        "Created recipe %s with %d ingredients", recipe.id, len(recipe.recipe_ingredients)
    )
    return recipe


async def update_recipe(
    session: AsyncSession,
    recipe_id: int,
    name: str,
    description: str | None,
    prep_time: int,
    cuisine_type: str | None,
    ingredients: Iterable[IngredientLine],
) -> Recipe:
    """Replace a recipe's fields and its whole ingredient set."""

    async def work(session: AsyncSession) -> Recipe:
        # ingredient rows belong to the recipe: wipe them all, then rebuild
        await session.execute(
            delete(RecipeIngredient).where(RecipeIngredient.recipe_id == recipe_id)
        )
        recipe = await session.get(Recipe, recipe_id, populate_existing=True)
        if recipe is None:
            raise NotFoundError("Failed to update recipe")
        recipe.name = name
        recipe.description = description
        recipe.prep_time = prep_time
        recipe.cuisine_type = cuisine_type
        recipe.recipe_ingredients.extend(_ingredient_rows(ingredients))
        await session.flush()
        return await _load_recipe(session, recipe_id)

    recipe = await run_in_transaction(session, work, action="update recipe")
    logger.info("Updated recipe %s", recipe_id)
    return recipe


async def delete_recipe(session: AsyncSession, recipe_id: int) -> int:
    async def work(session: AsyncSession) -> None:
        await session.execute(
            delete(RecipeIngredient).where(RecipeIngredient.recipe_id == recipe_id)
        )
        await session.execute(delete(Rating).where(Rating.recipe_id == recipe_id))
        await session.execute(delete(favorites).where(favorites.c.recipe_id == recipe_id))
        res = await session.execute(delete(Recipe).where(Recipe.id == recipe_id))
        if res.rowcount == 0:
            raise NotFoundError("Failed to delete recipe")

    await run_in_transaction(session, work, action="delete recipe")
    logger.info("Deleted recipe %s", recipe_id)
    return recipe_id


async def list_recipes(session: AsyncSession) -> list[Recipe]:
    async with store_errors("load recipes"):
        res = await session.execute(select(Recipe).order_by(Recipe.id.desc()))
        return list(res.scalars().all())


async def filtered_recipe_ids(
    session: AsyncSession,
    cuisine_type: str | None = None,
    min_rating: float = 0,
) -> list[int]:
    """Ids of recipes matching the cuisine whose average score reaches min_rating.

    Unrated recipes average 0. A missing cuisine or "all" matches every recipe.
    """
    average = func.coalesce(func.avg(Rating.score), 0)
    stmt = (
        select(Recipe.id)
        .outerjoin(Rating, Rating.recipe_id == Recipe.id)
        .group_by(Recipe.id)
        .having(average >= min_rating)
        .order_by(Recipe.id.desc())
    )
    if cuisine_type and cuisine_type.lower() != "all":
        stmt = stmt.where(func.lower(Recipe.cuisine_type) == cuisine_type.lower())

    async with store_errors("filter recipes"):
        res = await session.execute(stmt)
        return list(res.scalars().all())


async def recipes_by_ids(session: AsyncSession, recipe_ids: Sequence[int]) -> list[Recipe]:
    stmt = select(Recipe).where(Recipe.id.in_(recipe_ids)).order_by(Recipe.id.desc())
    async with store_errors("load recipes"):
        res = await session.execute(stmt)
        return list(res.scalars().all())


async def list_recipes_filtered(
    session: AsyncSession,
    cuisine_type: str | None = None,
    min_rating: float | None = None,
) -> list[Recipe]:
    ids = await filtered_recipe_ids(
        session, cuisine_type, 0 if min_rating is None else min_rating
    )
    if not ids:
        return []
    return await recipes_by_ids(session, ids)


# ingredients


async def create_ingredient(session: AsyncSession, name: str) -> Ingredient:
    async def work(session: AsyncSession) -> Ingredient:
        ingredient = Ingredient(name=name)
        session.add(ingredient)
        await session.flush()
        return ingredient

    ingredient = await run_in_transaction(session, work, action="create ingredient")
    logger.info("Created ingredient %s (%s)", ingredient.id, name)
    return ingredient


async def list_ingredients(session: AsyncSession) -> list[Ingredient]:
    async with store_errors("load ingredients"):
        res = await session.execute(select(Ingredient).order_by(Ingredient.name, Ingredient.id))
        return list(res.scalars().all())


# favorites


async def _set_favorite(
    session: AsyncSession, recipe_id: int, user_id: int, favorited: bool
) -> bool:
    action = "favorite recipe" if favorited else "unfavorite recipe"

    async def work(session: AsyncSession) -> bool:
        recipe = await session.get(
            Recipe, recipe_id, options=[selectinload(Recipe.favorited_by)]
        )
        user = await session.get(User, user_id)
        if recipe is None or user is None:
            raise NotFoundError(f"Failed to {action}")
        present = user in recipe.favorited_by
        if favorited and not present:
            recipe.favorited_by.append(user)
        elif not favorited and present:
            recipe.favorited_by.remove(user)
        await session.flush()
        return favorited

    return await run_in_transaction(
        session, work, action=action, isolation_level=IsolationLevel.REPEATABLE_READ
    )


async def favorite_recipe(session: AsyncSession, recipe_id: int, user_id: int) -> bool:
    return await _set_favorite(session, recipe_id, user_id, True)


async def unfavorite_recipe(session: AsyncSession, recipe_id: int, user_id: int) -> bool:
    return await _set_favorite(session, recipe_id, user_id, False)


async def favorite_recipe_ids(session: AsyncSession, user_id: int) -> list[int]:
    stmt = (
        select(favorites.c.recipe_id)
        .where(favorites.c.user_id == user_id)
        .order_by(favorites.c.recipe_id.desc())
    )
    async with store_errors("load favorites"):
        res = await session.execute(stmt)
        return list(res.scalars().all())


async def list_favorite_recipes(session: AsyncSession, user_id: int) -> list[Recipe]:
    stmt = (
        select(Recipe)
        .where(Recipe.favorited_by.any(User.id == user_id))
        .order_by(Recipe.id.desc())
    )
    async with store_errors("load favorite recipes"):
        res = await session.execute(stmt)
        return list(res.scalars().all())


# ratings


async def add_rating(
    session: AsyncSession, recipe_id: int, user_id: int, score: int
) -> Rating:
    """Create or overwrite the user's rating of a recipe."""

    async def work(session: AsyncSession) -> Rating:
        insert = _UPSERT_INSERTS.get(session.bind.dialect.name)
        if insert is None:
            return await _rating_select_then_write(session, recipe_id, user_id, score)
        stmt = insert(Rating).values(user_id=user_id, recipe_id=recipe_id, score=score)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "recipe_id"],
            set_={"score": stmt.excluded.score},
        )
        return await session.scalar(
            stmt.returning(Rating), execution_options={"populate_existing": True}
        )

    rating = await run_in_transaction(
        session,
        work,
        action="rate recipe",
        isolation_level=IsolationLevel.REPEATABLE_READ,
        timeout=settings.rating_transaction_timeout,
    )
    logger.info("User %s rated recipe %s with %s", user_id, recipe_id, score)
    return rating


async def _rating_select_then_write(
    session: AsyncSession, recipe_id: int, user_id: int, score: int
) -> Rating:
    rating = await _find_rating(session, recipe_id, user_id)
    if rating is None:
        rating = Rating(user_id=user_id, recipe_id=recipe_id, score=score)
        session.add(rating)
    else:
        rating.score = score
    await session.flush()
    return rating


async def _find_rating(
    session: AsyncSession, recipe_id: int, user_id: int
) -> Rating | None:
    stmt = select(Rating).where(Rating.user_id == user_id, Rating.recipe_id == recipe_id)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_recipe_rating(
    session: AsyncSession, recipe_id: int, user_id: int
) -> Rating | None:
    async with store_errors("load rating"):
        return await _find_rating(session, recipe_id, user_id)
