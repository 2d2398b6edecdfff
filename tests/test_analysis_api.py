import csv
import io

import pytest
from flask import Flask

from conftest import make_metadata
from keywording.models import GlobalStats, PipelineResult


@pytest.fixture
def app():
    from keywording.analysis_api import analysis_api

    app = Flask(__name__)
    app.register_blueprint(analysis_api)
    return app


class StubPipeline:
    def __init__(self, result):
        self.result = result
        self.items = None

    async def process_images(self, items, progress_callback=None):
        self.items = items
        return self.result


def test_health(app):
    resp = app.test_client().get('/api/v1/health')
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['success'] is True
    assert data['data']['status'] == 'ok'


def test_analyze_returns_metadata_and_stats(monkeypatch, app):
    import keywording.analysis_api as analysis_api_module

    result = PipelineResult(
        success=True,
        metadata=[make_metadata('a.jpg')],
        stats=GlobalStats(total_items=2, success_count=1, failure_count=1),
    )
    stub = StubPipeline(result)
    monkeypatch.setattr(analysis_api_module, 'create_pipeline', lambda: stub)

    resp = app.test_client().post('/api/v1/analyze', json={'images': [
        {'fileName': 'a.jpg', 'mimeType': 'image/jpeg', 'base64Data': 'AAA'},
        {'fileName': 'b.jpg', 'mimeType': 'image/jpeg', 'base64Data': 'BBB'},
    ]})

    assert resp.status_code == 200
    data = resp.get_json()
    assert data['success'] is True
    assert data['data']['metadata'][0]['file_name'] == 'a.jpg'
    assert data['data']['stats']['failure_count'] == 1
    assert [i.index for i in stub.items] == [0, 1]


@pytest.mark.parametrize("body", [
    {},
    {'images': 'nope'},
    {'images': [{'fileName': 'a.jpg', 'mimeType': 'image/jpeg'}]},
])
def test_analyze_rejects_bad_input(app, body):
    resp = app.test_client().post('/api/v1/analyze', json=body)
    assert resp.status_code == 400
    assert resp.get_json()['success'] is False


def test_analyze_unexpected_error(monkeypatch, app):
    import keywording.analysis_api as analysis_api_module

    def broken():
        raise RuntimeError("pipeline exploded")
    monkeypatch.setattr(analysis_api_module, 'create_pipeline', broken)

    resp = app.test_client().post('/api/v1/analyze', json={'images': [
        {'fileName': 'a.jpg', 'mimeType': 'image/jpeg', 'base64Data': 'AAA'}]})
    assert resp.status_code == 500
    assert 'pipeline exploded' in resp.get_json()['error']


def test_export_csv(app):
    metadata = [make_metadata('a.jpg', keyword_count=2).to_dict()]
    resp = app.test_client().post('/api/v1/export/AdobeStock', json={'metadata': metadata})

    assert resp.status_code == 200
    assert resp.mimetype == 'text/csv'
    assert 'attachment; filename="adobestock_metadata_' in resp.headers['Content-Disposition']
    rows = list(csv.reader(io.StringIO(resp.get_data(as_text=True))))
    assert rows[1][:3] == ['a.jpg', 'Title for a.jpg', 'kw0;kw1']


def test_export_unknown_template(app):
    resp = app.test_client().post('/api/v1/export/Shutterstock', json={'metadata': []})
    assert resp.status_code == 404


def test_export_templates(app):
    data = app.test_client().get('/api/v1/export/templates').get_json()
    assert data['data']['default'] == 'AdobeStock'
    assert set(data['data']['templates']) == {'AdobeStock', 'Freepik'}


def test_export_accepts_comma_separated_keywords(app):
    metadata = [{'file_name': 'beach.jpg', 'title': 'Beach', 'description': 'd',
                 'keywords': 'sea,sun', 'category': 'Travel'}]
    resp = app.test_client().post('/api/v1/export/Freepik', json={'metadata': metadata})

    assert resp.status_code == 200
    rows = list(csv.reader(io.StringIO(resp.get_data(as_text=True))))
    assert rows[1][2] == 'sea,sun'


def test_export_rejects_non_list_keywords(app):
    metadata = [{'file_name': 'a.jpg', 'title': 'A', 'description': 'd',
                 'keywords': 7, 'category': 'Travel'}]
    resp = app.test_client().post('/api/v1/export/AdobeStock', json={'metadata': metadata})
    assert resp.status_code == 400
