def test_health_reports_database(api_client):
    resp = api_client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['db'] is True
    assert body['uptime'] >= 0


def test_metrics_exposes_prometheus_text(user_client):
    user_client.get('/api/messages/t1')
    resp = user_client.get('/metrics')
    assert resp.status_code == 200
    assert resp.headers['content-type'].startswith('text/plain')
    assert 'chatdesk_requests_total' in resp.text
    assert 'chatdesk_presence_connections' in resp.text


def test_domains_catalogue(api_client):
    resp = api_client.get('/api/domains')
    assert resp.status_code == 200
    ids = [d['id'] for d in resp.json()]
    assert ids == ['law', 'finance', 'medicine']
    finance = resp.json()[1]
    assert {'id': 'portfolio', 'name': 'Portfolio Analysis'} in finance['subFeatures']


def test_unknown_route_uses_error_shape(api_client):
    resp = api_client.get('/api/nope')
    assert resp.status_code == 404
    assert resp.json() == {'error': 'Not Found'}
