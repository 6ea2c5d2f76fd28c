from typing import List, Optional

from pydantic import BaseModel, Field, conint, constr, field_validator


class UserCreate(BaseModel):
    username: constr(min_length=1, max_length=200) = Field(..., example="chef")
    password: constr(min_length=1, max_length=200) = Field(..., example="s3cret")


class UserOut(BaseModel):
    id: int
    username: str

    model_config = {"from_attributes": True}


class UserDeleted(BaseModel):
    id: int
    username: str
    active_user_cleared: bool = Field(
        ..., description="The deleted user was the caller's active user"
    )


class ActiveUser(BaseModel):
    user_id: int


class ActiveUserOut(BaseModel):
    data: Optional[int]


class IngredientCreate(BaseModel):
    name: constr(min_length=1, max_length=200) = Field(..., example="Basil")


class IngredientOut(BaseModel):
    id: int
    name: str

    model_config = {"from_attributes": True}


class RecipeIngredientIn(BaseModel):
    ingredient_id: int
    quantity: int
    unit: str = Field(..., example="g")


class RecipeIn(BaseModel):
    """Body of both create and update; an update replaces the ingredient set."""

    name: str = Field(..., example="Pesto pasta")
    description: Optional[str] = Field(None, example="Blend, boil, toss.")
    prep_time: int = Field(..., description="Preparation time in minutes", example=20)
    cuisine_type: Optional[str] = Field(None, example="Italian")
    ingredients: List[RecipeIngredientIn] = Field(
        ...,
        example=[
            {"ingredient_id": 1, "quantity": 200, "unit": "g"},
            {"ingredient_id": 2, "quantity": 30, "unit": "g"},
        ],
    )

    @field_validator("ingredients")
    @classmethod
    def unique_ingredients(cls, value: List[RecipeIngredientIn]) -> List[RecipeIngredientIn]:
        ids = [item.ingredient_id for item in value]
        if len(ids) != len(set(ids)):
            raise ValueError("each ingredient may appear only once per recipe")
        return value


class RecipeIngredientOut(BaseModel):
    id: int
    ingredient_id: int
    name: str
    quantity: int
    unit: str


class RecipeOut(BaseModel):
    id: int
    name: str
    description: Optional[str]
    prep_time: int
    cuisine_type: Optional[str]
    ingredients: List[RecipeIngredientOut]
    ratings: List[int] = Field(..., description="Raw scores; averaging is up to the caller")


class RecipeDeleted(BaseModel):
    success: bool
    id: int


class FavoriteOut(BaseModel):
    recipe_id: int
    user_id: int
    favorited: bool


class RatingIn(BaseModel):
    score: conint(ge=1, le=5) = Field(..., example=4)


class RatingOut(BaseModel):
    id: int
    user_id: int
    recipe_id: int
    score: int

    model_config = {"from_attributes": True}


class ErrorOut(BaseModel):
    detail: str
    kind: str
    retryable: bool
