#!/usr/bin/env python3
"""
Simple demonstration of online phylogenetic placement.

This script:
1. Simulates a tree, an alignment and a sample of reference trees
2. Adds each query taxon to every reference tree with AttachmentMove
3. Updates importance weights and resamples when the ESS drops

Usage:
    python examples/demo.py
"""

import logging
import numpy as np

# Import sts_online package
import sts_online as sts


def effective_sample_size(log_weights):
    w = np.exp(log_weights - np.max(log_weights))
    w /= w.sum()
    return 1.0 / np.sum(w ** 2)


def run_demo(
    num_reference=8,
    num_query=3,
    num_sites=500,
    num_particles=20,
    random_seed=42
):
    """
    Run a complete online placement demo.
    """
    print("\n")
    print("=" * 60)
    print("STS-ONLINE DEMO")
    print("=" * 60)
    print()

    model = sts.hky85(kappa=2.0, frequencies=[0.3, 0.2, 0.2, 0.3])
    rates = sts.gamma_rates(4, alpha=0.5)

    print("=" * 60)
    print("SIMULATING DATA")
    print("=" * 60)
    print(f"Reference taxa: {num_reference}")
    print(f"Query taxa: {num_query}")
    print(f"Sites: {num_sites}")
    print(f"Model: {model.name}, {rates.n_categories} rate categories")
    print()

    data = sts.simulate_dataset(
        num_reference=num_reference,
        num_query=num_query,
        num_sites=num_sites,
        model=model,
        rate_distribution=rates,
        num_reference_trees=num_particles,
        random_seed=random_seed
    )
    print(f"True tree: {data.true_tree.as_newick(precision=4)}")
    print()

    metrics = sts.BackendMetrics()
    engine = sts.PartialLikelihoodEngine(data.alignment, model, rates, metrics=metrics)
    likelihood = sts.CompositeLikelihood(engine, [sts.BranchLengthPrior()])
    move = sts.AttachmentMove(likelihood, data.query_names)

    particles = sts.create_particles(data.reference_trees, model, rates)
    rng = np.random.default_rng(random_seed + 1)

    print("=" * 60)
    print("ADDING QUERY TAXA")
    print("=" * 60)
    print()

    for step, name in enumerate(data.query_names):
        extended = []
        for particle in particles:
            likelihood.initialize(particle.model, particle.rate_distribution, particle.tree)
            old_log_like = likelihood()

            new_particle, proposal = move(particle, rng)

            likelihood.initialize(new_particle.model, new_particle.rate_distribution, new_particle.tree)
            new_log_like = likelihood()
            new_particle.log_weight += new_log_like - old_log_like - proposal.log_proposal_density()
            extended.append(new_particle)
        particles = extended

        log_weights = np.array([p.log_weight for p in particles])
        ess = effective_sample_size(log_weights)
        print(f"Step {step + 1}: added {name}, ESS = {ess:.2f}")

        if ess < 0.5 * len(particles):
            w = np.exp(log_weights - np.max(log_weights))
            indices = rng.choice(len(particles), size=len(particles), p=w / w.sum())
            particles = [particles[i].copy() for i in indices]
            for p in particles:
                p.log_weight = 0.0
            print(f"  Resampled {len(particles)} particles")

    print("\n")
    print("=" * 60)
    print("RESULTS")
    print("=" * 60)
    log_weights = np.array([p.log_weight for p in particles])
    best = particles[int(np.argmax(log_weights))]
    print(f"Highest weight tree: {best.tree.as_newick(precision=4)}")
    print()
    print("Backend work:")
    print(f"  Transition matrices computed: {metrics.transition_matrices_computed}")
    print(f"  Partial operations: {metrics.partials_operations}")
    print(f"  Root evaluations: {metrics.root_evaluations}")
    print(f"  Edge evaluations: {metrics.edge_evaluations}")
    print()
    print("=" * 60)
    print("DEMO COMPLETE")
    print("=" * 60)
    print()

    return particles


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    particles = run_demo()
    print("Demo finished successfully!")
