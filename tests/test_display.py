"""
test_display.py
~~~~~~~~~~~~~~~

Tests for the text dump of a network and the example driver script.
"""

import importlib.util
import os

import pytest

from packnet import codec, forward, gradient
from packnet.display import format_array, format_network

SCRIPT = os.path.join(os.path.dirname(__file__), '..', 'scripts', 'run_example.py')


def _load_driver():
    spec = importlib.util.spec_from_file_location('run_example', SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.unit
class TestFormatNetwork:

    def test_format_array(self):
        assert format_array([1, -0.5]) == "1.000000,-0.500000"

    def test_scenario_dump(self, scenario_network):
        forward(scenario_network, [1.0, 1.0])
        text = format_network(scenario_network, 'nw')

        assert text.splitlines() == [
            "layer #0:",
            "neurons[2]=1.000000,1.000000",
            "weights[2][3]=",
            "0:1.000000,1.000000,0.000000",
            "1:1.000000,1.000000,0.000000",
            "layer #1 (relu):",
            "neurons[2]=2.000000,2.000000",
            "weights[1][3]=",
            "0:1.000000,1.000000,0.000000",
            "layer #2 (sigmoid):",
            "neurons[1]=0.982014",
        ]

    def test_deltas_only_for_non_input_layers(self, random_network):
        gradient(random_network, None, [0.5])
        text = format_network(random_network, 'd')

        assert text.count('deltas[') == 3
        assert 'neurons[' not in text
        assert 'weights[' not in text


@pytest.mark.integration
class TestDriver:

    def test_driver_runs(self, tmp_path, capsys):
        driver = _load_driver()
        path = str(tmp_path / 'example.pknt')

        assert driver.main(['--seed', '0', '--save', path]) == 0

        out = capsys.readouterr().out
        assert "layer #3 (sigmoid):" in out
        assert "Verification passed" in out

        with open(path, 'rb') as f:
            restored = codec.load(f)
        assert restored.neuron_counts == (4, 3, 2, 1)

    def test_build_example_is_seeded(self):
        driver = _load_driver()
        a = driver.build_example(11)
        b = driver.build_example(11)
        assert a.buffer.tobytes() == b.buffer.tobytes()
