"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST endpoints and WebSocket events.
"""

import base64
from io import BytesIO

import pytest
import numpy as np
from PIL import Image

from nn_visualizer import api_server
from nn_visualizer.dataset import SampleSet


@pytest.fixture
def samples():
    """Three 2x2 images; the last one is labelled wrongly on purpose."""
    data = bytes([
        0, 0, 0, 0,
        255, 255, 255, 255,
        255, 255, 255, 255,
    ])
    return SampleSet(data, [0, 1, 0], width=4)


@pytest.fixture
def server(temp_db_dir, monkeypatch, brightness_network, samples):
    """API server with one registered network and a small sample set."""
    monkeypatch.setattr(api_server, 'MODEL_DIR', temp_db_dir)
    monkeypatch.setattr(api_server, 'sample_set', samples)
    monkeypatch.setattr(api_server, 'active_networks', {})
    api_server.register_network('bright', brightness_network)
    return api_server


@pytest.fixture
def client(server):
    server.app.config['TESTING'] = True
    return server.app.test_client()


def png_b64(pixels: np.ndarray) -> str:
    """Encode a gray bitmap as a base64 PNG, the way a canvas snapshot is sent."""
    rgba = np.zeros(pixels.shape + (4,), dtype=np.uint8)
    rgba[..., :3] = pixels[..., None]
    rgba[..., 3] = 255
    buffer = BytesIO()
    Image.fromarray(rgba).save(buffer, format='PNG')
    return base64.b64encode(buffer.getvalue()).decode('ascii')


@pytest.mark.unit
class TestNetworkEndpoints:

    def test_status(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        assert response.get_json() == {
            'status': 'online', 'active_networks': 1, 'samples': 3
        }

    def test_create_network(self, client, server, temp_db_dir):
        response = client.post('/api/networks', json={
            'network_id': 'adder',
            'structure': [4, 2],
            'weights': [0.0] * 8,
            'biases': [1.0, 0.0],
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body['network_id'] == 'adder'
        assert body['structure'] == [4, 2]
        assert body['saved'] is True
        # Always predicts class 0; two of the three samples are labelled 0
        assert body['accuracy'] == pytest.approx(2 / 3)
        assert 'adder' in server.active_networks

    def test_create_network_generates_id(self, client):
        response = client.post('/api/networks', json={
            'structure': [2, 1], 'weights': [1.0, 1.0], 'biases': [0.0],
        })
        assert response.status_code == 201
        assert response.get_json()['network_id']

    def test_create_malformed_network(self, client, server):
        response = client.post('/api/networks', json={
            'network_id': 'broken',
            'structure': [2, 1], 'weights': [1.0], 'biases': [0.0],
        })
        assert response.status_code == 400
        assert 'weights' in response.get_json()['error']
        assert 'broken' not in server.active_networks

    def test_create_network_unexpected_error(self, client, server, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk on fire")
        monkeypatch.setattr(server, 'save_network', broken)

        response = client.post('/api/networks', json={
            'network_id': 'unlucky',
            'structure': [2, 1], 'weights': [1.0, 1.0], 'biases': [0.0],
        })
        assert response.status_code == 500
        assert 'disk on fire' in response.get_json()['error']
        assert 'unlucky' not in server.active_networks

    def test_list_networks(self, client):
        client.post('/api/networks', json={
            'network_id': 'saved_one',
            'structure': [2, 1], 'weights': [1.0, 1.0], 'biases': [0.0],
        })
        ids = {net['network_id'] for net in client.get('/api/networks').get_json()['networks']}
        assert ids == {'bright', 'saved_one'}

    def test_get_network(self, client):
        body = client.get('/api/networks/bright').get_json()
        assert body['structure'] == [4, 2]
        assert body['weight_count'] == 8
        assert body['bias_count'] == 2

    def test_unknown_network(self, client):
        assert client.get('/api/networks/nope').status_code == 404
        assert client.post('/api/networks/nope/predict', json={'input': [0.0]}).status_code == 404

    def test_delete_network(self, client, server):
        response = client.delete('/api/networks/bright')
        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert 'bright' not in server.active_networks
        assert client.delete('/api/networks/bright').status_code == 404


@pytest.mark.unit
class TestPredictEndpoints:

    def test_predict_from_input(self, client):
        response = client.post('/api/networks/bright/predict', json={'input': [1.0] * 4})
        body = response.get_json()

        assert response.status_code == 200
        assert body['predicted'] == 1
        assert body['output'] == pytest.approx([-0.02, 2.0])
        assert body['scores'] == pytest.approx({'0': -0.02, '1': 2.0})

    def test_predict_from_pixels(self, client):
        body = client.post('/api/networks/bright/predict',
                           json={'pixels': [255, 255, 255, 255]}).get_json()
        assert body['predicted'] == 1

    def test_predict_from_image(self, client):
        image = png_b64(np.array([[255, 255], [255, 0]], dtype=np.uint8))
        body = client.post('/api/networks/bright/predict',
                           json={'image': 'data:image/png;base64,' + image}).get_json()
        # Three bright pixels: class 1 scores 1.0, class 0 scores -0.01
        assert body['predicted'] == 1
        assert body['output'] == pytest.approx([-0.01, 1.0])

    def test_image_and_pixels_agree(self, client):
        pixels = np.array([[200, 0], [0, 0]], dtype=np.uint8)
        from_image = client.post('/api/networks/bright/predict',
                                 json={'image': png_b64(pixels)}).get_json()
        from_pixels = client.post('/api/networks/bright/predict',
                                  json={'pixels': pixels.reshape(-1).tolist()}).get_json()
        assert from_image['output'] == from_pixels['output']

    def test_predict_wrong_length(self, client):
        response = client.post('/api/networks/bright/predict', json={'input': [1.0] * 3})
        assert response.status_code == 400

    def test_predict_needs_one_source(self, client):
        assert client.post('/api/networks/bright/predict', json={}).status_code == 400
        assert client.post('/api/networks/bright/predict',
                           json={'input': [0.0] * 4, 'pixels': [0] * 4}).status_code == 400

    def test_predict_invalid_image(self, client):
        response = client.post('/api/networks/bright/predict', json={'image': 'not an image'})
        assert response.status_code == 400

    @pytest.mark.parametrize("image", [123, None, ['abc']])
    def test_predict_non_string_image(self, client, image):
        response = client.post('/api/networks/bright/predict', json={'image': image})
        assert response.status_code == 400
        assert 'base64 string' in response.get_json()['error']

    def test_predict_pixels_out_of_range(self, client):
        response = client.post('/api/networks/bright/predict',
                               json={'pixels': [1000, -500, 0, 0]})
        assert response.status_code == 400
        assert '0-255' in response.get_json()['error']

    def test_predict_unexpected_error(self, client, server, monkeypatch):
        def broken(x, net):
            raise RuntimeError("boom")
        monkeypatch.setattr(server, 'predict', broken)

        response = client.post('/api/networks/bright/predict', json={'input': [0.0] * 4})
        assert response.status_code == 500
        assert response.get_json() == {'error': 'Internal server error'}

    def test_clear(self, client):
        body = client.post('/api/networks/bright/clear').get_json()
        assert body['predicted'] == 0
        assert body['output'] == pytest.approx([2.0, -0.02])


@pytest.mark.unit
class TestSampleEndpoints:

    def test_get_sample(self, client):
        body = client.get('/api/networks/bright/samples/1').get_json()
        assert body['index'] == 1
        assert body['label'] == 1
        assert body['predicted'] == 1
        assert body['correct'] is True
        assert base64.b64decode(body['image_data'])[:4] == b'\x89PNG'

    def test_sample_index_wraps(self, client):
        assert client.get('/api/networks/bright/samples/4').get_json()['index'] == 1
        assert client.get('/api/networks/bright/samples/-1').get_json()['index'] == 2

    def test_next_from_last(self, client):
        assert client.get('/api/networks/bright/samples/2/next').get_json()['index'] == 0

    def test_prev_from_first(self, client):
        assert client.get('/api/networks/bright/samples/0/prev').get_json()['index'] == 2

    def test_next_wrong(self, client):
        body = client.get('/api/networks/bright/samples/0/next_wrong').get_json()
        assert body['index'] == 2
        assert body['correct'] is False

    def test_next_wrong_none_found(self, client, server, brightness_network):
        server.sample_set = SampleSet(bytes(4), [0], width=4)
        response = client.get('/api/networks/bright/samples/0/next_wrong')
        assert response.status_code == 404

    def test_unknown_direction(self, client):
        assert client.get('/api/networks/bright/samples/0/sideways').status_code == 400

    def test_no_samples_loaded(self, client, server):
        server.sample_set = None
        response = client.get('/api/networks/bright/samples/0')
        assert response.status_code == 500

    def test_sample_width_mismatch(self, client, server, adder_network):
        server.register_network('adder', adder_network)
        assert client.get('/api/networks/adder/samples/0').status_code == 400


@pytest.mark.integration
class TestWebSocketEvents:

    @pytest.fixture
    def ws_client(self, server):
        return server.socketio.test_client(server.app)

    def test_draw_emits_prediction(self, ws_client):
        ws_client.emit('draw', {'network_id': 'bright', 'pixels': [255, 255, 255, 255]})
        received = ws_client.get_received()

        assert received[-1]['name'] == 'prediction'
        payload = received[-1]['args'][0]
        assert payload['predicted'] == 1
        assert payload['network_id'] == 'bright'

    def test_each_stroke_is_independent(self, ws_client):
        ws_client.emit('draw', {'network_id': 'bright', 'pixels': [255, 255, 255, 255]})
        ws_client.emit('draw', {'network_id': 'bright', 'pixels': [0, 0, 0, 0]})
        received = [event for event in ws_client.get_received() if event['name'] == 'prediction']

        assert [event['args'][0]['predicted'] for event in received] == [1, 0]

    def test_draw_bad_input(self, ws_client):
        ws_client.emit('draw', {'network_id': 'bright', 'pixels': [255]})
        received = ws_client.get_received()
        assert received[-1]['name'] == 'prediction_error'

    def test_draw_non_string_image(self, ws_client):
        ws_client.emit('draw', {'network_id': 'bright', 'image': 123})
        received = ws_client.get_received()
        assert received[-1]['name'] == 'prediction_error'
        assert 'base64 string' in received[-1]['args'][0]['error']

    def test_draw_pixels_out_of_range(self, ws_client):
        ws_client.emit('draw', {'network_id': 'bright', 'pixels': [1000, -500, 0, 0]})
        assert ws_client.get_received()[-1]['name'] == 'prediction_error'

    def test_draw_unknown_network(self, ws_client):
        ws_client.emit('draw', {'network_id': 'missing', 'pixels': [0, 0, 0, 0]})
        assert ws_client.get_received()[-1]['name'] == 'prediction_error'

    def test_clear(self, ws_client):
        ws_client.emit('clear', {'network_id': 'bright'})
        received = ws_client.get_received()
        assert received[-1]['name'] == 'prediction'
        assert received[-1]['args'][0]['predicted'] == 0
