"""Core topic and related models: topics, articles, score history, keywords."""
from ecoticker.models.base import *


CATEGORIES = (
    "air_quality", "deforestation", "ocean", "climate", "pollution",
    "biodiversity", "wildlife", "energy", "waste", "water",
)
URGENCIES = ("breaking", "critical", "moderate", "informational")
SOURCE_TYPES = ("gnews", "rss", "api", "unknown")


def _in_clause(column: str, values: tuple) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


# ─── Topics ───
class Topic(Base):
    __tablename__ = "topics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    category = Column(String, default="climate")
    region = Column(String, nullable=True)
    current_score = Column(Integer, default=0, nullable=False)
    previous_score = Column(Integer, default=0, nullable=False)
    urgency = Column(String, default="informational", nullable=False)
    impact_summary = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    article_count = Column(Integer, default=0, nullable=False)
    health_score = Column(Integer, default=0)
    eco_score = Column(Integer, default=0)
    econ_score = Column(Integer, default=0)
    score_reasoning = Column(Text, nullable=True)
    hidden = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    articles = relationship("Article", back_populates="topic")
    score_history = relationship("ScoreHistory", back_populates="topic")
    keywords = relationship("TopicKeyword", back_populates="topic")

    __table_args__ = (
        CheckConstraint(_in_clause("category", CATEGORIES), name="ck_topics_category"),
        CheckConstraint(_in_clause("urgency", URGENCIES), name="ck_topics_urgency"),
        Index("idx_topics_urgency", "urgency"),
        Index("idx_topics_category", "category"),
    )

    @property
    def change(self) -> int:
        return (self.current_score or 0) - (self.previous_score or 0)


# ─── Articles ───
class Article(Base):
    __tablename__ = "articles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    title = Column(Text, nullable=False)
    url = Column(Text, unique=True, nullable=False)
    source = Column(String, nullable=True)
    summary = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    source_type = Column(String, default="unknown", nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
    fetched_at = Column(DateTime(timezone=True), default=utcnow)
    # Null until the batch scorer has folded the article into its topic's score
    scored_at = Column(DateTime(timezone=True), nullable=True)

    topic = relationship("Topic", back_populates="articles")

    __table_args__ = (
        CheckConstraint(_in_clause("source_type", SOURCE_TYPES), name="ck_articles_source_type"),
        Index("idx_articles_topic", "topic_id"),
        Index("idx_articles_unscored", "topic_id", "scored_at"),
    )


# ─── Score History ───
class ScoreHistory(Base):
    __tablename__ = "score_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    recorded_at = Column(Date, nullable=False)
    score = Column(Integer, nullable=False)
    health_score = Column(Integer, nullable=True)
    eco_score = Column(Integer, nullable=True)
    econ_score = Column(Integer, nullable=True)
    health_level = Column(String, nullable=True)
    eco_level = Column(String, nullable=True)
    econ_level = Column(String, nullable=True)
    impact_summary = Column(Text, nullable=True)
    anomaly_detected = Column(Boolean, default=False, nullable=False)
    raw_response = Column(JSON, nullable=True)

    topic = relationship("Topic", back_populates="score_history")

    __table_args__ = (
        UniqueConstraint("topic_id", "recorded_at", name="uq_score_history_topic_day"),
        Index("idx_score_history_date", "recorded_at"),
    )


# ─── Topic Keywords ───
class TopicKeyword(Base):
    __tablename__ = "topic_keywords"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    keyword = Column(String, nullable=False)

    topic = relationship("Topic", back_populates="keywords")

    __table_args__ = (
        UniqueConstraint("topic_id", "keyword", name="uq_topic_keywords_unique"),
        Index("idx_topic_keywords_topic", "topic_id"),
    )
