from sqlalchemy import Column, Integer, String, Text, UniqueConstraint
from dataexport.core.database import Base


class LanguageToken(Base):
    __tablename__ = "language_tokens"

    id = Column(Integer, primary_key=True, index=True)
    language_id = Column(String, nullable=False, index=True)  # e.g. english_us, french_fr
    token = Column(String, nullable=False, index=True)  # e.g. LNG_CASE_FIELD_LABEL_FIRST_NAME
    translation = Column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("language_id", "token", name="uq_language_tokens_language_token"),
    )
