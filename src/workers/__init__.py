"""Stage workers and their external collaborators."""
from src.workers.analytics import AnalyticsWorker
from src.workers.collaborators import (
    AnalyticsSink,
    CollaboratorError,
    HttpAnalyticsSink,
    HttpNotificationChannels,
    HttpRecipeMatcher,
    HttpRecognitionClient,
    IngredientRecognizer,
    NotificationChannels,
    RecipeMatcher,
)
from src.workers.image_recognition import ImageRecognitionWorker
from src.workers.notification import NotificationWorker
from src.workers.recipe_matching import RecipeMatchingWorker

__all__ = [
    "AnalyticsWorker",
    "AnalyticsSink",
    "CollaboratorError",
    "HttpAnalyticsSink",
    "HttpNotificationChannels",
    "HttpRecipeMatcher",
    "HttpRecognitionClient",
    "IngredientRecognizer",
    "NotificationChannels",
    "RecipeMatcher",
    "ImageRecognitionWorker",
    "NotificationWorker",
    "RecipeMatchingWorker",
]
