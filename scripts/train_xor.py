#!/usr/bin/env python3
"""
Train a small network on XOR and save it.

Builds a 2-4-1 network (ReLU hidden layer, Sigmoid output), trains it
with Adam and cross-entropy, prints the predictions and writes the model
so it can be reloaded with ``NeuralNetwork.load``.

Usage:
    python scripts/train_xor.py [--epochs 1000] [--output models/xor.npz]

If the output file already exists the saved model is loaded and
evaluated instead of training a new one (use --retrain to override).
"""

import argparse
import os
import sys

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from feedforward import (  # noqa: E402
    Adam,
    DenseLayer,
    NetworkError,
    NeuralNetwork,
    TrainingStats,
)

X_XOR = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=np.float32)
Y_XOR = np.array([[0], [1], [1], [0]], dtype=np.float32)


def build_network(seed: int) -> NeuralNetwork:
    """
    Create the 2-4-1 XOR network.

    Parameters:
    -----------
    seed : int
        Seed for weight initialization

    Returns:
    --------
    NeuralNetwork
        Untrained network
    """
    rng = np.random.default_rng(seed)
    network = NeuralNetwork()
    network.add_layer(DenseLayer(2, 4, 'ReLU', rng=rng))
    network.add_layer(DenseLayer(4, 1, 'Sigmoid', rng=rng))
    return network


def print_predictions(network: NeuralNetwork) -> None:
    """Print the network output for every XOR input."""
    predictions = network.predict(X_XOR)
    print("\n🔍 Predictions:")
    for inputs, target, output in zip(X_XOR, Y_XOR, predictions):
        mark = "✅" if round(float(output[0])) == int(target[0]) else "❌"
        print(f"   {mark} {inputs.tolist()} -> {output[0]:.4f} (expected {int(target[0])})")


def main():
    """Train or load the XOR model."""
    parser = argparse.ArgumentParser(description="Train a network on XOR")
    parser.add_argument('--epochs', type=int, default=1000)
    parser.add_argument('--learning-rate', type=float, default=0.05)
    parser.add_argument('--seed', type=int, default=0)
    parser.add_argument('--output', default=os.path.join('models', 'xor.npz'))
    parser.add_argument('--retrain', action='store_true')
    args = parser.parse_args()

    print("=" * 60)
    print("XOR training")
    print("=" * 60)

    try:
        if os.path.exists(args.output) and not args.retrain:
            print(f"📂 Loading saved model from: {args.output}")
            network = NeuralNetwork.load(args.output)
            print_predictions(network)
            return

        network = build_network(args.seed)
        stats = TrainingStats()
        print(f"🏗️  Created network {network.sizes}")

        result = network.train(
            X_XOR,
            Y_XOR,
            epochs=args.epochs,
            batch_size=4,
            loss_fn='cross_entropy',
            optimizer=Adam(learning_rate=args.learning_rate),
            stats=stats,
            seed=args.seed,
        )
        print(
            f"✅ Trained {result.epochs_completed} epochs in {result.elapsed_time:.2f}s "
            f"(loss {result.final_loss:.6f}, accuracy {result.final_accuracy:.2%})"
        )
        print_predictions(network)

        network.save(args.output)
        print(f"\n💾 Model saved to: {args.output}")

    except NetworkError as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
