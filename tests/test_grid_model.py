"""Tests for the PyTorch grid detector and TorchDetectionModel."""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest
import torch
from conftest import GRID_SIZE, IMAGE_SIZE, NUM_CLASSES, ListSource

from detection_training.config import ModelConfig
from detection_training.errors import ConfigurationError, PipelineError, StageError
from detection_training.models.grid import (
    NUM_BOX_CHANNELS,
    GridDetectionModel,
    GridDetectionNetwork,
    GridLabelEncoder,
    grid_detection_loss,
)
from detection_training.transforms.augmenter import TorchvisionAugmenter
from detection_training.types import EncodedInputBatch, ImageAnnotation, InputBatch


def _make_model(
    model_config: ModelConfig, augmenter: TorchvisionAugmenter, **kwargs: object
) -> GridDetectionModel:
    torch.manual_seed(0)
    return GridDetectionModel(model_config, augmenter, width=4, **kwargs)  # type: ignore[arg-type]


def _losses(outputs: list) -> list[torch.Tensor]:  # type: ignore[type-arg]
    return [o.loss for o in outputs]


# ---------------------------------------------------------------------------
# Label encoding
# ---------------------------------------------------------------------------


class TestGridLabelEncoder:
    def test_single_box(self) -> None:
        encoder = GridLabelEncoder(output_height=4, output_width=4, num_classes=3)
        # Center at (0.375, 0.625) -> column 1, row 2, offsets 0.5.
        ann = ImageAnnotation(class_id=2, x=0.25, y=0.5, width=0.25, height=0.25)
        target = encoder.encode_image([ann])
        assert target.shape == (4, 4, NUM_BOX_CHANNELS + 3)
        cell = target[2, 1]
        assert cell.tolist() == pytest.approx([1.0, 0.5, 0.5, 0.25, 0.25, 0.0, 0.0, 1.0])
        assert target[..., 0].sum() == 1.0

    def test_empty_image(self) -> None:
        encoder = GridLabelEncoder(4, 4, 2)
        assert torch.count_nonzero(encoder.encode_image([])) == 0

    def test_center_on_far_edge_stays_in_grid(self) -> None:
        encoder = GridLabelEncoder(4, 4, 2)
        ann = ImageAnnotation(class_id=0, x=0.9, y=0.9, width=0.2, height=0.2)
        target = encoder.encode_image([ann])
        assert target[3, 3, 0] == 1.0

    def test_later_box_wins_shared_cell(self) -> None:
        encoder = GridLabelEncoder(2, 2, 2)
        first = ImageAnnotation(class_id=0, x=0.0, y=0.0, width=0.2, height=0.2)
        second = ImageAnnotation(class_id=1, x=0.1, y=0.1, width=0.1, height=0.1)
        cell = encoder.encode_image([first, second])[0, 0]
        assert cell[NUM_BOX_CHANNELS + 0] == 0.0
        assert cell[NUM_BOX_CHANNELS + 1] == 1.0

    def test_class_out_of_range(self) -> None:
        encoder = GridLabelEncoder(4, 4, 2)
        with pytest.raises(ValueError, match="out of range"):
            encoder.encode_image([ImageAnnotation(class_id=2, x=0, y=0, width=0.1, height=0.1)])

    def test_batch_shape(self) -> None:
        encoder = GridLabelEncoder(3, 5, 2)
        assert encoder([(), ()]).shape == (2, 3, 5, NUM_BOX_CHANNELS + 2)
        assert encoder([]).shape == (0, 3, 5, NUM_BOX_CHANNELS + 2)


# ---------------------------------------------------------------------------
# Network and loss
# ---------------------------------------------------------------------------


class TestNetworkAndLoss:
    def test_network_output_layout(self) -> None:
        net = GridDetectionNetwork(num_classes=3, output_height=5, output_width=7, width=4)
        out = net(torch.rand(2, 40, 48, 3))
        assert out.shape == (2, 5, 7, NUM_BOX_CHANNELS + 3)

    def test_network_has_no_buffers(self) -> None:
        net = GridDetectionNetwork(num_classes=2, width=4)
        assert list(net.buffers()) == []

    def test_loss_is_per_image(self) -> None:
        labels = GridLabelEncoder(4, 4, 2)(
            [(ImageAnnotation(class_id=1, x=0.1, y=0.1, width=0.2, height=0.2),), ()]
        )
        preds = torch.zeros(2, 4, 4, NUM_BOX_CHANNELS + 2)
        loss = grid_detection_loss(preds, labels)
        assert loss.shape == (2,)
        # The image with an object also pays box and class terms.
        assert loss[0] > loss[1]
        assert torch.all(loss > 0)


# ---------------------------------------------------------------------------
# GridDetectionModel training
# ---------------------------------------------------------------------------


class TestGridDetectionModel:
    def test_requires_num_classes(self, augmenter: TorchvisionAugmenter) -> None:
        with pytest.raises(ConfigurationError):
            GridDetectionModel(ModelConfig(batch_size=2), augmenter)

    def test_encode_keeps_annotations(
        self, model_config: ModelConfig, augmenter: TorchvisionAugmenter
    ) -> None:
        model = _make_model(model_config, augmenter)
        ann = ImageAnnotation(class_id=1, x=0.1, y=0.1, width=0.2, height=0.2)
        batch = InputBatch(
            iteration_id=4,
            images=torch.rand(1, IMAGE_SIZE, IMAGE_SIZE, 3),
            annotations=((ann,),),
        )
        encoded = model.encode(batch)
        assert encoded.iteration_id == 4
        assert encoded.annotations == batch.annotations
        assert encoded.labels.shape == (1, GRID_SIZE, GRID_SIZE, NUM_BOX_CHANNELS + NUM_CLASSES)

    def test_training_updates_weights(
        self,
        model_config: ModelConfig,
        augmenter: TorchvisionAugmenter,
        make_source: Callable[[int], ListSource],
    ) -> None:
        model = _make_model(model_config, augmenter)
        before = model.checkpoint()
        outputs = list(model.as_training_batch_publisher(make_source(5), 2))
        after = model.checkpoint()
        assert [o.iteration_id for o in outputs] == [1, 2, 3]
        assert [o.loss.shape for o in outputs] == [(2,), (2,), (1,)]
        assert before.iteration_id == 0
        assert after.iteration_id == 3
        assert any(
            not torch.equal(before.weights[k], after.weights[k]) for k in before.weights
        )

    def test_checkpoint_contains_config_and_all_weights(
        self, model_config: ModelConfig, augmenter: TorchvisionAugmenter
    ) -> None:
        model = _make_model(model_config, augmenter)
        checkpoint = next(iter(model.as_checkpoint_publisher()))
        assert checkpoint.config == model_config
        assert set(checkpoint.weights) == set(model.network.state_dict())

    def test_repeated_checkpoints_identical(
        self,
        model_config: ModelConfig,
        augmenter: TorchvisionAugmenter,
        make_source: Callable[[int], ListSource],
    ) -> None:
        model = _make_model(model_config, augmenter)
        list(model.as_training_batch_publisher(make_source(4), 2))
        checkpoints = iter(model.as_checkpoint_publisher())
        first, second = next(checkpoints), next(checkpoints)
        checkpoints.close()
        assert first.iteration_id == second.iteration_id == 2
        for name, tensor in first.weights.items():
            assert torch.equal(tensor, second.weights[name])
            assert tensor.data_ptr() != second.weights[name].data_ptr()

    def test_checkpoint_is_not_a_view_of_live_weights(
        self,
        model_config: ModelConfig,
        augmenter: TorchvisionAugmenter,
        make_source: Callable[[int], ListSource],
    ) -> None:
        model = _make_model(model_config, augmenter)
        snapshot = model.checkpoint()
        frozen = {k: v.clone() for k, v in snapshot.weights.items()}
        list(model.as_training_batch_publisher(make_source(2), 2))
        for name, tensor in snapshot.weights.items():
            assert torch.equal(tensor, frozen[name])

    def test_resume_from_checkpoint_matches_uninterrupted_run(
        self,
        model_config: ModelConfig,
        augmenter: TorchvisionAugmenter,
        make_source: Callable[[int], ListSource],
    ) -> None:
        # No momentum: the optimizer carries no state a checkpoint would lose.
        uninterrupted = _make_model(model_config, augmenter, momentum=0.0)
        full = list(uninterrupted.as_training_batch_publisher(make_source(8), 2))

        first_half = _make_model(model_config, augmenter, momentum=0.0)
        stream = iter(first_half.as_training_batch_publisher(make_source(8), 2))
        next(stream)
        next(stream)
        stream.close()
        checkpoint = first_half.checkpoint()
        assert checkpoint.iteration_id == 2

        resumed = GridDetectionModel.from_checkpoint(
            checkpoint, augmenter, width=4, momentum=0.0
        )
        assert resumed.last_iteration_id == 2
        rest = list(
            resumed.as_training_batch_publisher(
                make_source(8), 2, offset=checkpoint.iteration_id
            )
        )

        assert [o.iteration_id for o in rest] == [3, 4]
        for expected, actual in zip(_losses(full[2:]), _losses(rest), strict=True):
            assert torch.allclose(expected, actual, atol=1e-6)

    def test_load_weights_rejects_mismatched_names(
        self, model_config: ModelConfig, augmenter: TorchvisionAugmenter
    ) -> None:
        model = _make_model(model_config, augmenter)
        with pytest.raises(RuntimeError):
            model.load_weights({"bogus": torch.zeros(1)})

    def test_bad_class_id_fails_encode_stage(
        self,
        augmenter: TorchvisionAugmenter,
        make_source: Callable[[int], ListSource],
    ) -> None:
        # conftest examples use class ids 0 and 1; a 1-class model rejects id 1.
        config = ModelConfig(batch_size=1, num_classes=1, output_height=2, output_width=2)
        model = _make_model(config, augmenter)
        with pytest.raises(StageError) as excinfo:
            list(model.as_training_batch_publisher(make_source(3), 1))
        assert excinfo.value.stage == "encode"
        assert excinfo.value.iteration_id == 2
        assert model.last_iteration_id == 1

    def test_concurrent_train_step_rejected(
        self, model_config: ModelConfig, augmenter: TorchvisionAugmenter
    ) -> None:
        model = _make_model(model_config, augmenter)
        batch = EncodedInputBatch(
            iteration_id=1,
            images=torch.rand(1, IMAGE_SIZE, IMAGE_SIZE, 3),
            labels=torch.zeros(1, GRID_SIZE, GRID_SIZE, NUM_BOX_CHANNELS + NUM_CLASSES),
            annotations=((),),
        )
        with model._step_lock:
            with pytest.raises(PipelineError, match="concurrently"):
                model.train_step(batch)

    def test_checkpoint_during_training_from_other_thread(
        self,
        model_config: ModelConfig,
        augmenter: TorchvisionAugmenter,
        make_source: Callable[[int], ListSource],
    ) -> None:
        model = _make_model(model_config, augmenter)
        seen: list[int] = []
        errors: list[BaseException] = []

        def poll() -> None:
            checkpoints = iter(model.as_checkpoint_publisher())
            try:
                for _ in range(20):
                    seen.append(next(checkpoints).iteration_id)
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)
            finally:
                checkpoints.close()

        thread = threading.Thread(target=poll)
        thread.start()
        list(model.as_training_batch_publisher(make_source(10), 2))
        thread.join()
        assert errors == []
        assert seen == sorted(seen)
        assert all(0 <= i <= 5 for i in seen)
