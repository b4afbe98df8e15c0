from finnacli import Record, ResultPage


def make_record(**overrides) -> dict:
    data = {
        "id": "helmet.1234",
        "title": "Kalevala",
        "formats": [
            {"value": "0/Book/", "translated": "Kirja"},
            {"value": "1/Book/Book/", "translated": "Kirja"},
        ],
        "buildings": [{"value": "0/Helmet/", "translated": "Helmet-kirjastot"}],
        "primaryAuthors": ["Lönnrot, Elias"],
        "nonPresenterAuthors": [{"name": "Gallen-Kallela, Akseli", "role": "kuvittaja"}],
        "images": ["/Cover/Show?id=helmet.1234&index=0&size=large"],
        "year": "1849",
    }
    data.update(overrides)
    return data


def make_page(*records: dict, count: int | None = None) -> ResultPage:
    return ResultPage(
        tuple(Record.from_json(r) for r in records),
        len(records) if count is None else count,
    )


class FakeApi:
    """Records queries and serves canned pages and records."""

    def __init__(self, pages=None, records=None, error=None):
        self.pages = list(pages or [])
        self.records = dict(records or {})
        self.error = error
        self.search_queries: list[str] = []
        self.record_queries: list[str] = []

    def search(self, query):
        self.search_queries.append(query)
        if self.error:
            raise self.error
        return self.pages.pop(0) if self.pages else ResultPage()

    def record(self, query):
        self.record_queries.append(query)
        if self.error:
            raise self.error
        for record_id, data in self.records.items():
            if f"id%5B%5D={record_id}" in query:
                return Record.from_json(data)
        return Record.from_json({"id": "unknown"})


class FakeLauncher:
    def __init__(self):
        self.urls: list[str] = []
        self.images: list[list[str]] = []

    def open_url(self, url):
        self.urls.append(url)

    def open_images(self, urls):
        self.images.append(list(urls))


