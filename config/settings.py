"""
Migration Flow Atlas - Application Settings
Manages environment variables and configuration using Pydantic
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional
import os


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Build inputs:
        - FLOWS_CSV_PATH
        - COUNTY_BOUNDARIES_PATH
        - STATE_BOUNDARIES_PATH
        - CENTROIDS_CSV_PATH (optional, missing file is tolerated)

    Query runtime:
        - CACHE_DIR (local artifact root)
        - ARTIFACT_BASE_URL (optional, enables network fetch with local fallback)
    """

    # Application
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # API settings
    API_TITLE: str = "Migration Flow Atlas API"
    API_VERSION: str = "1.0.0"
    API_DESCRIPTION: str = "Read-only query API over partitioned migration flow caches"
    CORS_ALLOW_ORIGINS: str = ""

    # Build inputs
    FLOWS_CSV_PATH: str = "data/flow/migration_flows.csv"
    COUNTY_BOUNDARIES_PATH: str = "data/geo/cb_2018_us_county_5m_boundaries.geojson"
    STATE_BOUNDARIES_PATH: str = "data/geo/cb_2018_us_state_5m_boundaries.geojson"
    CENTROIDS_CSV_PATH: Optional[str] = "data/geo/county_centroids.csv"

    # Build tuning
    ADJACENCY_TOP_K: int = 100
    BUILD_WORKERS: int = 4
    ATTRIBUTION_PREFIX: str = "shap_"
    ATTRIBUTION_BASE_COLUMN: str = "shap_base_value"
    CACHE_JSON_INDENT: Optional[int] = None  # None = compact artifacts

    # Artifact access
    CACHE_DIR: str = "data/cache"
    ARTIFACT_BASE_URL: Optional[str] = None
    ARTIFACT_FETCH_TIMEOUT: float = 30.0

    # File storage
    LOG_DIR: str = "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Create directories if they don't exist
        os.makedirs(self.CACHE_DIR, exist_ok=True)
        if self.LOG_DIR:
            os.makedirs(self.LOG_DIR, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    """
    Returns cached settings instance.
    Uses lru_cache to avoid re-reading .env on every call.
    """
    return Settings()


# State FIPS codes -> names (used for GeoEntity.state_name)
FIPS_TO_STATE = {
    "01": "Alabama",
    "02": "Alaska",
    "04": "Arizona",
    "05": "Arkansas",
    "06": "California",
    "08": "Colorado",
    "09": "Connecticut",
    "10": "Delaware",
    "11": "District of Columbia",
    "12": "Florida",
    "13": "Georgia",
    "15": "Hawaii",
    "16": "Idaho",
    "17": "Illinois",
    "18": "Indiana",
    "19": "Iowa",
    "20": "Kansas",
    "21": "Kentucky",
    "22": "Louisiana",
    "23": "Maine",
    "24": "Maryland",
    "25": "Massachusetts",
    "26": "Michigan",
    "27": "Minnesota",
    "28": "Mississippi",
    "29": "Missouri",
    "30": "Montana",
    "31": "Nebraska",
    "32": "Nevada",
    "33": "New Hampshire",
    "34": "New Jersey",
    "35": "New Mexico",
    "36": "New York",
    "37": "North Carolina",
    "38": "North Dakota",
    "39": "Ohio",
    "40": "Oklahoma",
    "41": "Oregon",
    "42": "Pennsylvania",
    "44": "Rhode Island",
    "45": "South Carolina",
    "46": "South Dakota",
    "47": "Tennessee",
    "48": "Texas",
    "49": "Utah",
    "50": "Vermont",
    "51": "Virginia",
    "53": "Washington",
    "54": "West Virginia",
    "55": "Wisconsin",
    "56": "Wyoming",
    "60": "American Samoa",
    "66": "Guam",
    "69": "Northern Mariana Islands",
    "72": "Puerto Rico",
    "78": "U.S. Virgin Islands",
}

# Approximate placement for non-US origin regions: code -> (name, lon, lat)
REGION_CENTROIDS = {
    "ASI": ("Asia", 90.0, 30.0),
    "EUR": ("Europe", 10.0, 50.0),
    "CAM": ("Central America", -90.0, 15.0),
    "AFR": ("Africa", 20.0, 5.0),
    "SAM": ("South America", -60.0, -15.0),
    "NAM": ("North America (non-US)", -100.0, 45.0),
    "CAR": ("Caribbean", -75.0, 20.0),
    "OCE": ("Oceania", 140.0, -25.0),
    "ISL": ("Island regions", -30.0, 64.0),
}

# Demographic slice enumerations: id -> label
AGE_BUCKETS = {
    "age_18_24": "18-24",
    "age_25_34": "25-34",
    "age_35_44": "35-44",
    "age_45_54": "45-54",
    "age_55_64": "55-64",
    "age_65_plus": "65+",
}

INCOME_BUCKETS = {
    "inc_lt_25k": "<$25k",
    "inc_25_50k": "$25k-$50k",
    "inc_50_100k": "$50k-$100k",
    "inc_100_plus": "$100k+",
}

EDUCATION_BUCKETS = {
    "edu_hs": "High school or GED",
    "edu_some_college": "Some college",
    "edu_ba": "Bachelor's",
    "edu_grad": "Graduate degree",
}

DEMOGRAPHIC_DIMENSIONS = {
    "age": AGE_BUCKETS,
    "income": INCOME_BUCKETS,
    "education": EDUCATION_BUCKETS,
}
