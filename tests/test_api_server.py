"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API, using Flask's test client.
"""

import base64

import pytest
import numpy as np

from digitcnn import api_server
from digitcnn.config import TrainingConfig


@pytest.fixture
def client(tmp_path, monkeypatch):
    config = TrainingConfig(
        epochs=1,
        batch_size=5,
        train_size=10,
        test_size=10,
        use_augmentation=False,
        seed=0,
        model_path=str(tmp_path / "auto" / "model.bin"),
        model_dir=str(tmp_path / "registry"),
    )
    monkeypatch.setattr(api_server, 'config', config)
    api_server.active_networks.clear()
    api_server.training_jobs.clear()

    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as test_client:
        yield test_client

    for info in api_server.active_networks.values():
        info['controller'].stop_training()
        info['controller'].wait(timeout=120)
    api_server.active_networks.clear()
    api_server.training_jobs.clear()


def create(client, **body):
    response = client.post('/api/networks', json=body)
    assert response.status_code == 201
    return response.get_json()['network_id']


@pytest.mark.integration
class TestNetworkEndpoints:

    def test_status(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'online'
        assert data['active_networks'] == 0

    def test_create_network(self, client):
        response = client.post('/api/networks', json={'learning_rate': 0.002})
        assert response.status_code == 201
        data = response.get_json()
        assert data['status'] == 'created'
        assert data['architecture']['learning_rate'] == 0.002
        assert data['architecture']['fc1']['input_size'] == 2048
        assert data['network_id'] in api_server.active_networks

    @pytest.mark.parametrize("lr", [0, -0.1, "fast", True])
    def test_create_rejects_bad_learning_rate(self, client, lr):
        response = client.post('/api/networks', json={'learning_rate': lr})
        assert response.status_code == 400

    def test_unknown_network(self, client):
        assert client.post('/api/networks/nope/train', json={}).status_code == 404
        assert client.get('/api/networks/nope/evaluate').status_code == 404
        assert client.post('/api/networks/nope/predict', json={}).status_code == 404
        assert client.post('/api/networks/nope/save').status_code == 404
        assert client.post('/api/networks/nope/load').status_code == 404
        assert client.delete('/api/networks/nope').status_code == 404
        assert client.get('/api/training/nope').status_code == 404

    def test_predict(self, client):
        network_id = create(client)
        pixels = np.zeros((32, 32))
        pixels[8:24, 15:17] = 255

        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'pixels': pixels.tolist()})
        assert response.status_code == 200
        data = response.get_json()
        assert 0 <= data['predicted_digit'] <= 9
        assert len(data['probabilities']) == 10
        assert np.isclose(sum(data['probabilities']), 1.0)
        assert data['confidence'] == max(data['probabilities'])

    @pytest.mark.parametrize("pixels", [None, [[0.0] * 5] * 5, "abc"])
    def test_predict_rejects_bad_pixels(self, client, pixels):
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'pixels': pixels})
        assert response.status_code == 400

    def test_evaluate(self, client):
        network_id = create(client)
        response = client.get(f'/api/networks/{network_id}/evaluate')
        assert response.status_code == 200
        data = response.get_json()
        assert 0.0 <= data['accuracy'] <= 1.0
        assert np.array(data['confusion_matrix']).sum() == 10

    def test_example_image(self, client):
        network_id = create(client)
        response = client.get(f'/api/networks/{network_id}/example')
        assert response.status_code == 200
        data = response.get_json()
        assert base64.b64decode(data['image_data'])[:8] == b'\x89PNG\r\n\x1a\n'
        assert 0 <= data['actual_digit'] <= 9

    def test_example_leaves_global_random_state_alone(self, client):
        network_id = create(client)
        np.random.seed(5)
        state = np.random.get_state()

        assert client.get(f'/api/networks/{network_id}/example').status_code == 200

        after = np.random.get_state()
        assert after[2] == state[2]
        assert np.array_equal(after[1], state[1])


@pytest.mark.integration
class TestTrainingEndpoints:

    def test_train_runs_in_background(self, client):
        network_id = create(client)

        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': 1, 'train_size': 10})
        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        # A second request while the first run is active is refused
        busy = client.post(f'/api/networks/{network_id}/train', json={})
        assert busy.status_code == 409
        assert client.post(f'/api/networks/{network_id}/predict',
                           json={'pixels': [[0.0] * 32] * 32}).status_code == 409

        controller = api_server.active_networks[network_id]['controller']
        assert controller.wait(timeout=300)

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert 0.0 <= job['accuracy'] <= 1.0
        assert api_server.active_networks[network_id]['trained'] is True

    @pytest.mark.parametrize("body", [
        {'epochs': 0},
        {'batch_size': -1},
        {'train_size': 'many'},
        {'augment': 'yes'},
    ])
    def test_train_rejects_bad_parameters(self, client, body):
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400

    def test_stop_when_idle(self, client):
        network_id = create(client)
        assert client.post(f'/api/networks/{network_id}/stop').status_code == 409

    def test_stop_running_job(self, client):
        network_id = create(client)
        job_id = client.post(f'/api/networks/{network_id}/train',
                             json={'epochs': 3}).get_json()['job_id']

        response = client.post(f'/api/networks/{network_id}/stop')
        assert response.status_code == 202

        controller = api_server.active_networks[network_id]['controller']
        assert controller.wait(timeout=300)
        assert api_server.training_jobs[job_id]['status'] == 'stopped'
        assert api_server.active_networks[network_id]['trained'] is False

    def test_failed_auto_save_still_completes_job(self, client, tmp_path):
        network_id = create(client)
        blocker = tmp_path / "occupied"
        blocker.write_text("not a directory")
        controller = api_server.active_networks[network_id]['controller']
        controller.model_path = str(blocker / "model.bin")

        job_id = client.post(f'/api/networks/{network_id}/train',
                             json={'epochs': 1}).get_json()['job_id']
        assert controller.wait(timeout=300)

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert 'error' not in job
        assert any("Failed to save model" in w for w in job['warnings'])
        assert api_server.active_networks[network_id]['trained'] is True

    def test_training_error_marks_job_failed(self, client):
        network_id = create(client)
        controller = api_server.active_networks[network_id]['controller']

        def explode(digit, noise=0.0):
            raise RuntimeError("generator broke")
        controller.source.generate_digit = explode

        job_id = client.post(f'/api/networks/{network_id}/train',
                             json={'epochs': 1}).get_json()['job_id']
        assert controller.wait(timeout=300)

        job = api_server.training_jobs[job_id]
        assert job['status'] == 'failed'
        assert "generator broke" in job['error']
        assert api_server.active_networks[network_id]['trained'] is False


@pytest.mark.integration
class TestRegistryEndpoints:

    def test_save_list_load_delete(self, client):
        network_id = create(client)

        assert client.post(f'/api/networks/{network_id}/save').status_code == 200

        networks = client.get('/api/networks').get_json()['networks']
        assert [n['network_id'] for n in networks] == [network_id]
        assert networks[0]['status'] == 'in_memory'

        # Forget the in-memory copy; the registry copy is still listed
        del api_server.active_networks[network_id]
        networks = client.get('/api/networks').get_json()['networks']
        assert networks[0]['status'] == 'saved'

        response = client.post(f'/api/networks/{network_id}/load')
        assert response.status_code == 200
        assert network_id in api_server.active_networks

        response = client.delete(f'/api/networks/{network_id}')
        assert response.status_code == 200
        data = response.get_json()
        assert data['deleted_from_memory'] is True
        assert data['deleted_from_disk'] is True
        assert client.get('/api/networks').get_json()['networks'] == []

    def test_load_replaces_in_memory_weights(self, client):
        network_id = create(client)
        controller = api_server.active_networks[network_id]['controller']
        client.post(f'/api/networks/{network_id}/save')
        saved_weights = controller.network.fc2.weights.copy()

        controller.network.fc2.weights += 1.0
        assert client.post(f'/api/networks/{network_id}/load').status_code == 200
        assert np.array_equal(controller.network.fc2.weights, saved_weights)

    def test_load_refreshes_trained_flag_and_accuracy(self, client):
        network_id = create(client)
        info = api_server.active_networks[network_id]
        info['trained'] = True
        info['accuracy'] = 0.7
        assert client.post(f'/api/networks/{network_id}/save').status_code == 200

        info['trained'] = False
        info['accuracy'] = None
        response = client.post(f'/api/networks/{network_id}/load')

        assert response.status_code == 200
        data = response.get_json()
        assert (data['trained'], data['accuracy']) == (True, 0.7)
        assert (info['trained'], info['accuracy']) == (True, 0.7)
