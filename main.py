import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from crud import (
    IngredientLine,
    add_rating,
    create_ingredient,
    create_recipe,
    create_user,
    delete_recipe,
    delete_user,
    favorite_recipe,
    favorite_recipe_ids,
    get_recipe_rating,
    get_user,
    list_favorite_recipes,
    list_ingredients,
    list_recipes,
    list_recipes_filtered,
    list_users,
    unfavorite_recipe,
    update_recipe,
)
from database import get_session, init_models
from errors import RecipeBookError
from models import Recipe
from schemas import (
    ActiveUser,
    ActiveUserOut,
    ErrorOut,
    FavoriteOut,
    IngredientCreate,
    IngredientOut,
    RatingIn,
    RatingOut,
    RecipeDeleted,
    RecipeIn,
    RecipeIngredientOut,
    RecipeOut,
    UserCreate,
    UserDeleted,
    UserOut,
)
from user_context import UserContext

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

tags = [
    {"name": "Accounts", "description": "Users, the caller's active user and favorites."},
    {"name": "Recipes", "description": "Recipes, filtering, favorites and ratings."},
    {"name": "Ingredients", "description": "The shared ingredient catalogue."},
]

app = FastAPI(
    title="Recipe Book API",
    version="1.0.0",
    description=(
        "Recipe book service.\n\n"
        "- `GET /recipes` - all recipes, newest first\n"
        "- `GET /recipes/filtered` - by cuisine and minimum average rating\n"
        "- `POST /recipes`, `PUT /recipes/{id}`, `DELETE /recipes/{id}`\n"
        "- `PUT /recipes/{id}/ratings/{user_id}` - rate a recipe\n"
        "\nThe active user travels in the `X-User-Id` header.\n"
    ),
    openapi_tags=tags,
    responses={
        404: {"model": ErrorOut},
        409: {"model": ErrorOut},
        503: {"model": ErrorOut},
    },
)


@app.on_event("startup")
async def on_startup():
    await init_models()


@app.exception_handler(RecipeBookError)
async def recipe_book_error_handler(request: Request, exc: RecipeBookError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "kind": exc.kind, "retryable": exc.retryable},
    )


def get_user_context(x_user_id: Optional[int] = Header(default=None)) -> UserContext:
    return UserContext(user_id=x_user_id)


def recipe_detail(recipe: Recipe) -> RecipeOut:
    return RecipeOut(
        id=recipe.id,
        name=recipe.name,
        description=recipe.description,
        prep_time=recipe.prep_time,
        cuisine_type=recipe.cuisine_type,
        ingredients=[
            RecipeIngredientOut(
                id=ri.id,
                ingredient_id=ri.ingredient_id,
                name=ri.ingredient.name,
                quantity=ri.quantity,
                unit=ri.unit,
            )
            for ri in recipe.recipe_ingredients
        ],
        ratings=[r.score for r in recipe.ratings],
    )


def ingredient_lines(payload: RecipeIn) -> List[IngredientLine]:
    return [
        IngredientLine(i.ingredient_id, i.quantity, i.unit) for i in payload.ingredients
    ]


# accounts


@app.post(
    "/accounts", response_model=UserOut, status_code=status.HTTP_201_CREATED, tags=["Accounts"]
)
async def post_account(payload: UserCreate, session: AsyncSession = Depends(get_session)):
    return await create_user(session, payload.username, payload.password)


@app.get("/accounts", response_model=List[UserOut], tags=["Accounts"])
async def get_accounts(session: AsyncSession = Depends(get_session)):
    return await list_users(session)


@app.get("/accounts/active", response_model=ActiveUserOut, tags=["Accounts"])
async def get_active_account(context: UserContext = Depends(get_user_context)):
    return ActiveUserOut(data=context.user_id)


@app.put("/accounts/active", response_model=ActiveUser, tags=["Accounts"])
async def put_active_account(
    payload: ActiveUser, session: AsyncSession = Depends(get_session)
):
    user = await get_user(session, payload.user_id)
    return ActiveUser(user_id=user.id)


@app.delete("/accounts/{user_id}", response_model=UserDeleted, tags=["Accounts"])
async def remove_account(
    user_id: int,
    session: AsyncSession = Depends(get_session),
    context: UserContext = Depends(get_user_context),
):
    user, cleared = await delete_user(session, user_id, context)
    return UserDeleted(id=user.id, username=user.username, active_user_cleared=cleared)


@app.get("/accounts/{user_id}/favorites", response_model=List[int], tags=["Accounts"])
async def get_favorite_ids(user_id: int, session: AsyncSession = Depends(get_session)):
    return await favorite_recipe_ids(session, user_id)


@app.get(
    "/accounts/{user_id}/favorite-recipes", response_model=List[RecipeOut], tags=["Accounts"]
)
async def get_favorite_recipes(user_id: int, session: AsyncSession = Depends(get_session)):
    return [recipe_detail(r) for r in await list_favorite_recipes(session, user_id)]


# recipes


@app.get("/recipes", response_model=List[RecipeOut], tags=["Recipes"])
async def get_recipes(session: AsyncSession = Depends(get_session)):
    return [recipe_detail(r) for r in await list_recipes(session)]


@app.get("/recipes/filtered", response_model=List[RecipeOut], tags=["Recipes"])
async def get_recipes_filtered(
    cuisine_type: Optional[str] = Query(None, description='Cuisine, or "all"'),
    min_rating: Optional[float] = Query(None, description="Minimum average score"),
    session: AsyncSession = Depends(get_session),
):
    recipes = await list_recipes_filtered(session, cuisine_type, min_rating)
    return [recipe_detail(r) for r in recipes]


@app.post(
    "/recipes", response_model=RecipeOut, status_code=status.HTTP_201_CREATED, tags=["Recipes"]
)
async def post_recipe(payload: RecipeIn, session: AsyncSession = Depends(get_session)):
    recipe = await create_recipe(
        session=session,
        name=payload.name,
        description=payload.description,
        prep_time=payload.prep_time,
        cuisine_type=payload.cuisine_type,
        ingredients=ingredient_lines(payload),
    )
    return recipe_detail(recipe)


@app.put("/recipes/{recipe_id}", response_model=RecipeOut, tags=["Recipes"])
async def put_recipe(
    recipe_id: int, payload: RecipeIn, session: AsyncSession = Depends(get_session)
):
    recipe = await update_recipe(
        session=session,
        recipe_id=recipe_id,
        name=payload.name,
        description=payload.description,
        prep_time=payload.prep_time,
        cuisine_type=payload.cuisine_type,
        ingredients=ingredient_lines(payload),
    )
    return recipe_detail(recipe)


@app.delete("/recipes/{recipe_id}", response_model=RecipeDeleted, tags=["Recipes"])
async def remove_recipe(recipe_id: int, session: AsyncSession = Depends(get_session)):
    deleted_id = await delete_recipe(session, recipe_id)
    return RecipeDeleted(success=True, id=deleted_id)


@app.put(
    "/recipes/{recipe_id}/favorites/{user_id}", response_model=FavoriteOut, tags=["Recipes"]
)
async def put_favorite(
    recipe_id: int, user_id: int, session: AsyncSession = Depends(get_session)
):
    favorited = await favorite_recipe(session, recipe_id, user_id)
    return FavoriteOut(recipe_id=recipe_id, user_id=user_id, favorited=favorited)


@app.delete(
    "/recipes/{recipe_id}/favorites/{user_id}", response_model=FavoriteOut, tags=["Recipes"]
)
async def remove_favorite(
    recipe_id: int, user_id: int, session: AsyncSession = Depends(get_session)
):
    favorited = await unfavorite_recipe(session, recipe_id, user_id)
    return FavoriteOut(recipe_id=recipe_id, user_id=user_id, favorited=favorited)


@app.put("/recipes/{recipe_id}/ratings/{user_id}", response_model=RatingOut, tags=["Recipes"])
async def put_rating(
    recipe_id: int,
    user_id: int,
    payload: RatingIn,
    session: AsyncSession = Depends(get_session),
):
    return await add_rating(session, recipe_id, user_id, payload.score)


@app.get(
    "/recipes/{recipe_id}/ratings/{user_id}",
    response_model=Optional[RatingOut],
    tags=["Recipes"],
)
async def get_rating(recipe_id: int, user_id: int, session: AsyncSession = Depends(get_session)):
    return await get_recipe_rating(session, recipe_id, user_id)


# ingredients


@app.post(
    "/ingredients",
    response_model=IngredientOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Ingredients"],
)
async def post_ingredient(
    payload: IngredientCreate, session: AsyncSession = Depends(get_session)
):
    return await create_ingredient(session, payload.name)


@app.get("/ingredients", response_model=List[IngredientOut], tags=["Ingredients"])
async def get_ingredients(session: AsyncSession = Depends(get_session)):
    return await list_ingredients(session)
