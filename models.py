from sqlalchemy import Column, String, Text
from sqlalchemy.orm import declarative_base
import uuid_utils


def generate_record_id() -> str:
    """Generate a UUIDv7 string for a freshly assembled article record"""
    return str(uuid_utils.uuid7())

Base = declarative_base()


class Article(Base):
    __tablename__ = 'Article'

    id = Column(String(64), primary_key=True, default=generate_record_id)
    slug = Column(String(200), nullable=False, index=True)
    headline = Column(Text, nullable=False)
    summary = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    author = Column(Text, nullable=False)
    resource = Column(String(100), nullable=False, index=True)
    media = Column(Text, nullable=False)
    link = Column(String(2000), nullable=False)
    # ISO-8601 text; empty when the page exposes no machine-readable date
    date = Column(String(40), nullable=False, default="")

    def __repr__(self):
        return (
            f"<Article(id={self.id}, resource='{self.resource}', headline='{self.headline[:30]}...', "
            f"link='{self.link}')>"
        )


# Example usage:
if __name__ == "__main__":
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    engine = create_engine('sqlite:///harvest.db')
    Base.metadata.create_all(engine)

    Session = sessionmaker(bind=engine)
    with Session() as session:
        article = Article(
            slug="sampleheadline-lx2k9a3f",
            headline="Sample headline",
            summary="",
            body="",
            author="See article for details",
            resource="BBC News",
            media="https://news.bbc.co.uk/nol/shared/img/bbc_news_120x60.gif",
            link="https://www.bbc.com/news/articles/sample",
            date="",
        )
        session.add(article)
        session.commit()
        print(f"Created article with ID: {article.id}")
